# pipewrap/cli.py
# The command-line entrypoint. Parses flags, validates the configuration, opens the capture source
# and runs the session until it is interrupted or the source ends.
#
#   pipewrap --cmd "tcpdump -l -i lo" --count 20 --log-dir ./logs
#   pipewrap -i lo --filter "tcp and port 22" --count 20 --log-dir ./logs --log-dir-threshold 40
import argparse
import sys

from loguru import logger

from pipewrap.capture.manager import CaptureSession, create_source
from pipewrap.config_loader import load_config
from pipewrap.errors import BackendError, ConfigError
from pipewrap.logger import setup_logging
from pipewrap.shutdown import ShutdownCoordinator

EXIT_BACKEND_ERROR = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pipewrap",
                                     description="Capture command output or packets into rotated, size-bounded files")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--cmd", dest="command", help="Command to run; each stdout line is a record")
    source.add_argument("--iface", "-i", dest="interface", help="Network interface to capture from")
    parser.add_argument("--filter", "-f", dest="bpf_filter", help="BPF filter for interface capture")
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument("--log-dir", "-o", dest="log_dir", help="Existing directory for output files")
    parser.add_argument("--count", "-n", type=int, help="Records per output file")
    parser.add_argument("--log-dir-threshold", dest="log_dir_threshold", type=int,
                        help="Maximum log directory size in MB; oldest files are removed above it")
    parser.add_argument("--snaplen", type=int, help="Bytes kept per packet")
    parser.add_argument("--promisc", action="store_true", default=None, help="Put the interface in promiscuous mode")
    parser.add_argument("--echo", action="store_true", default=None, help="Also print captured lines to stdout")
    parser.add_argument("--channel-capacity", dest="channel_capacity", type=int,
                        help="Records buffered between capture and disk")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ...")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != "config"}
    setup_logging("INFO")

    try:
        cfg = load_config(args.config, overrides)
    except ConfigError as e:
        logger.error("Configuration error: {}", e)
        return EXIT_CONFIG_ERROR
    setup_logging(cfg.log_level)
    logger.info("Loaded configuration: {}", cfg.as_dict())

    try:
        source = create_source(cfg).open()
    except ConfigError as e:
        logger.error("Configuration error: {}", e)
        return EXIT_CONFIG_ERROR
    except BackendError as e:
        logger.error("Capture backend error: {}", e)
        return EXIT_BACKEND_ERROR

    session = CaptureSession(source, cfg.log_dir, records_per_file=cfg.count, max_dir_bytes=cfg.max_dir_bytes,
                             channel_capacity=cfg.channel_capacity)
    coordinator = ShutdownCoordinator(session).install()
    session.start()
    return coordinator.run()


if __name__ == "__main__":
    sys.exit(main())
