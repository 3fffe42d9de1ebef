"""Entry point for running the billing engine as a module."""

import argparse
import os
import sys

import uvicorn

from vpn_billing.config import Config, ConfigurationError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vpn-billing",
        description="VPN Billing Engine - payment webhooks, balance purchases and expiry reconciliation",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", "8080")),
        help="Port to bind to (default: 8080)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="Log output format (default: json)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "config/settings.yaml"),
        help="Path to settings.yaml configuration file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration, print a summary and exit",
    )
    return parser


def describe(config: Config) -> list[str]:
    """Summary lines for the startup banner and --check-config."""
    payments = config.payments
    lines = [
        f"Database: {config.database.url.split('://', 1)[0]}",
        f"Dedup cache: {'redis' if config.cache.redis_url else 'memory'}",
        f"Provider: {config.provider.base_url}",
        f"Webhook: POST {payments.webhook_path} "
        f"({len(payments.allowed_networks) or 'any'} source networks)",
        f"Reconciliation: "
        f"{'every %ss' % config.reconciliation.period_seconds if config.reconciliation.enabled else 'disabled'}",
    ]
    for plan in config.settings.plans:
        lines.append(f"Plan {plan.id}: {plan.price} {plan.currency} / {plan.duration_days}d")
    return lines


def main() -> None:
    """Main entry point for the billing engine."""
    args = build_parser().parse_args()

    try:
        config = Config(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.check_config:
        print("\n".join(describe(config)))
        return

    # Set environment variables for application
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CONFIG_PATH"] = args.config

    if args.log_format == "console":
        print("=" * 60)
        print("VPN Billing Engine v0.1.0")
        print("=" * 60)
        print(f"Listening: {args.host}:{args.port}")
        for line in describe(config):
            print(line)
        print("=" * 60)

    # One worker process keeps a single reconciliation loop
    try:
        uvicorn.run(
            "vpn_billing.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            workers=1,
            access_log=False,  # We use our own middleware for access logs
        )
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        sys.exit(0)


if __name__ == "__main__":
    main()
