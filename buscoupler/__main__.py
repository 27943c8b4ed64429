"""Command line probe: connect to a coupler, list its modules and dump the process image."""

import argparse
import sys
import time

from .coupler_conditions import CouplerError, HostUnreachableError
from .coupler_config import BusCouplerConfig
from .coupler_master import BusCouplerMaster


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buscoupler", description=__doc__)
    parser.add_argument("host", nargs="?", help="Coupler address (default: config / BUSCOUPLER_HOST)")
    parser.add_argument("--port", type=int, help="Modbus TCP port")
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("--env-file", help=".env file with BUSCOUPLER_* settings")
    parser.add_argument("--poll", type=int, metavar="MS",
                        help="Poll period in ms; 0 reads the coupler directly")
    parser.add_argument("--duration", type=float, default=1.0,
                        help="Seconds to poll before dumping the image (with --poll)")
    return parser


def load_config(args) -> BusCouplerConfig:
    if args.config:
        config = BusCouplerConfig.import_config_from_file(args.config)
    else:
        config = BusCouplerConfig.from_env(args.env_file)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.poll is not None:
        config.poll_period_ms = args.poll
    return config


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
        master = BusCouplerMaster(config, on_condition=lambda c: print(f"(FAIL) {c}"))
    except (OSError, ValueError) as e:
        print(f"(FAIL) Invalid configuration: {e}")
        return 2

    try:
        master.connect()
    except HostUnreachableError as e:
        print(f"(FAIL) Host unreachable: {e}")
        return 1
    except CouplerError as e:
        print(f"(FAIL) {e}")
        return 1

    try:
        print(f"(PASS) Connected to {config.host}:{config.port}")
        print(f"Summary: {master.summary}")
        for module in master.modules:
            print(
                f"  [{module.position}] {module.name} (id {module.hardware_id}) "
                f"DI={module.digital_in_base} DO={module.digital_out_base} "
                f"AI={module.analog_in_base} AO={module.analog_out_base}"
            )
        if master.poll_period_ms:
            time.sleep(args.duration)
            snapshot = master.snapshot()
            print(f"Digital in : {[int(bit) for bit in snapshot.digital_in]}")
            print(f"Digital out: {[int(bit) for bit in snapshot.digital_out]}")
            print(f"Analog in  : {snapshot.analog_in}")
            print(f"Analog out : {snapshot.analog_out}")
    finally:
        master.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
