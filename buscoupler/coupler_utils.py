"""Bus coupler driver utility functions."""

from typing import List, Optional, Sequence

# The coupler counts elapsed watchdog time in 5 ms units
TIME_UNIT_MS = 5


def pack_bits(values: Sequence[bool]) -> bytes:
    """
    Packs booleans 8 per byte, least significant bit first.

    The last byte is zero padded when len(values) is not a multiple of 8.
    """
    data = bytearray((len(values) + 7) // 8)
    for i, value in enumerate(values):
        if value:
            data[i // 8] |= 1 << (i % 8)
    return bytes(data)


def unpack_bits(data: bytes, count: Optional[int] = None) -> List[bool]:
    """
    Unpacks LSB-first packed bytes into booleans.

    Args:
        data: Packed payload
        count: Number of bits to return (defaults to all bits in data)
    """
    bits = [bool(byte >> bit & 1) for byte in data for bit in range(8)]
    if count is not None:
        return bits[:count]
    return bits


def bytes_to_words(data: bytes) -> List[int]:
    """
    Converts a big-endian payload into signed 16-bit words.

    A trailing odd byte is ignored.
    """
    words = []
    for i in range(0, len(data) - 1, 2):
        word = (data[i] << 8) | data[i + 1]
        if word & 0x8000:
            word -= 0x10000
        words.append(word)
    return words


def words_to_bytes(values: Sequence[int]) -> bytes:
    """Converts words (signed or unsigned 16-bit) into a big-endian payload."""
    data = bytearray()
    for value in values:
        word = int(value) & 0xFFFF
        data.append(word >> 8)
        data.append(word & 0xFF)
    return bytes(data)


def is_word(value: int) -> bool:
    """True if value fits a 16-bit register either as INT or UINT."""
    return -0x8000 <= value <= 0xFFFF


def to_signed_word(value: int) -> int:
    """Reads a 16-bit value (signed or unsigned) as INT."""
    value &= 0xFFFF
    return value - 0x10000 if value & 0x8000 else value


def bytes_to_unsigned_words(data: bytes) -> List[int]:
    return [word & 0xFFFF for word in bytes_to_words(data)]


def bytes_to_long(data: bytes) -> int:
    """Converts 4 big-endian bytes (two registers, high word first) into a signed 32-bit value."""
    if len(data) != 4:
        raise ValueError(f"Need exactly 4 bytes for a long value, got {len(data)}")
    return int.from_bytes(data, byteorder="big", signed=True)


def quantize_period_ms(period_ms: int) -> int:
    """Rounds a poll period down to the coupler's 5 ms time unit."""
    if period_ms < 0:
        raise ValueError(f"Poll period must be non-negative, got: {period_ms}")
    return (period_ms // TIME_UNIT_MS) * TIME_UNIT_MS


def parse_ip_address(address: str) -> Optional[bytes]:
    """
    Encodes a dotted IPv4 string as the coupler expects it: four registers,
    one octet in the low byte of each.

    Returns:
        8 byte payload, or None if the string is not four octets <= 255
    """
    if not isinstance(address, str):
        return None
    parts = address.strip().split(".")
    if len(parts) != 4:
        return None

    data = bytearray(8)
    for i, part in enumerate(parts):
        if not part.isdigit():
            return None
        octet = int(part)
        if octet > 255:
            return None
        data[2 * i + 1] = octet
    return bytes(data)


def format_ip_address(data: bytes) -> Optional[str]:
    """Decodes the four-register IP layout written by parse_ip_address."""
    if data is None or len(data) != 8:
        return None
    return ".".join(str(data[i]) for i in (1, 3, 5, 7))


def format_mac_address(data: bytes) -> Optional[str]:
    if data is None or len(data) != 6:
        return None
    return "-".join(f"{byte:02X}" for byte in data)


def format_serial(words: Sequence[int]) -> str:
    """
    Joins the three (signed) serial number registers, each zero padded to 3 digits.

    A first register with the sign bit set carries a hex prefix and is
    rendered as 4 hex digits.
    """
    first = words[0]
    if first < 0:
        head = f"{first & 0xFFFF:04X}"
    else:
        head = f"{first:03d}"
    return head + "".join(f"{word:03d}" for word in words[1:])
