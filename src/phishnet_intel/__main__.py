# Main Entry Point - PhishNet Threat Intelligence Engine
#
# By default serves the HTTP API with the ingestion scheduler running.
# One-shot operator commands:
#   --run-once         run one ingestion and print the report
#   --show-analysis    print the persisted analysis snapshot
#   --apply-retention  deactivate stale indicators and exit

import argparse
import json
import logging
import sys

from . import __version__
from .core import EventSeverity, EventType, get_audit_logger, load_settings
from .intel.exceptions import AlreadyRunning, RunFailed


def main(argv=None):
    """Main entry point for the threat intelligence engine."""
    parser = argparse.ArgumentParser(
        description="PhishNet threat intelligence ingestion & aggregation engine",
    )

    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single ingestion, print the run report and exit",
    )

    parser.add_argument(
        "--show-analysis",
        action="store_true",
        help="Print the persisted threat analysis snapshot and exit",
    )

    parser.add_argument(
        "--apply-retention",
        action="store_true",
        help="Deactivate indicators not seen within the retention window and exit",
    )

    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: ./.env if present)",
    )

    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="API host when serving (default: 127.0.0.1)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="API port when serving (default: 8000)",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Operational log level (default: INFO)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"PhishNet Intel v{__version__}",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(dotenv_path=args.env_file)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    from .service import ThreatIntelService

    service = ThreatIntelService.from_settings(settings)

    if args.show_analysis:
        print(json.dumps(service.get_threat_analysis().to_dict(), indent=2))
        service.close()
        return 0

    if args.apply_retention:
        deactivated = service.apply_retention()
        print(f"Deactivated {deactivated} stale indicators")
        service.close()
        return 0

    if args.run_once:
        try:
            report = service.orchestrator.run_now()
        except (AlreadyRunning, RunFailed) as e:
            print(f"Ingestion failed: {e}", file=sys.stderr)
            service.close()
            return 1
        print(json.dumps(report.to_dict(), indent=2))
        service.close()
        return 0

    from .api.main import start_api_server

    try:
        start_api_server(host=args.host, port=args.port, service=service)
    except KeyboardInterrupt:
        print("\n\nShutting down...")
    except Exception as e:
        print(f"\n\nError: {str(e)}", file=sys.stderr)
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"Threat intel server crashed: {str(e)}",
        )
        return 1
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
