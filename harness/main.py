"""
Network sweep harness - command-line entry point

Usage:
    python -m harness.main [--config config/harness_config.yaml]
                           [--role local|server|client] [--log-level INFO]
"""

import argparse
import logging
import sys

from harness.config import LOG_FORMAT, LOG_LEVEL, load_config, validate_config
from harness.errors import ConfigurationError
from harness.models import SweepRole
from harness.result_sink import render_table
from harness.sweep_controller import SweepController

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sweep emulated network conditions over a file-transfer client/server pair"
    )
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument(
        "--role",
        choices=[r.value for r in SweepRole],
        default=SweepRole.LOCAL.value,
        help="which side(s) of the transfer to drive (default: local)",
    )
    parser.add_argument("--log-level", default=LOG_LEVEL, help="logging level (default: INFO)")
    return parser


def main(argv=None) -> int:
    """Run one sweep. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)
    role = SweepRole(args.role)

    try:
        config = load_config(args.config)
        validate_config(config, role)
        controller = SweepController(config, role=role)
    except ConfigurationError as e:
        logger.error(f"ERROR: {e}")
        return 1

    try:
        summary = controller.run()
    except KeyboardInterrupt:
        logger.info("Interrupted; interface and port returned to baseline")
        return 130

    if role.drives_client and summary.total:
        print()
        print(f"All tests finished. Results written to: {config['paths']['results_csv']}")
        print()
        print(render_table(config["paths"]["results_csv"]))
    return 0


if __name__ == "__main__":
    sys.exit(main())
