import argparse
import logging
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vibecoder", description="Slack bot that runs Claude Code on request")
    parser.add_argument("--host", default=None, help="Host (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")

    subparsers = parser.add_subparsers(dest="command")
    restart_parser = subparsers.add_parser("restart", help="Restart the pm2 service with health check and rollback")
    restart_parser.add_argument("channel", help="Slack channel id to report to")
    restart_parser.add_argument("thread_ts", help="Thread ts of the request that asked for the restart")
    restart_parser.add_argument("safe_commit", help="Commit to roll back to if the new build is unhealthy")

    return parser


def setup_logging(verbose: bool = False) -> logging.Logger:
    log = logging.getLogger("vibecoder")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)
    return log


def main():
    args = build_parser().parse_args()
    log = setup_logging(args.verbose)

    from .server.settings import Settings

    settings = Settings.from_env()

    if args.command == "restart":
        from .deploy.restarter import main as restart_main

        sys.exit(restart_main(args.channel, args.thread_ts, args.safe_commit, settings))

    missing = settings.missing_required()
    if missing:
        log.error("missing required settings: %s (set them in the environment or .env)", ", ".join(missing))
        sys.exit(2)
    if not settings.get("slack.app_token") and not settings.get("slack.signing_secret"):
        log.error("set SLACK_APP_TOKEN for socket mode or SLACK_SIGNING_SECRET for HTTP events")
        sys.exit(2)

    effective = settings.get_effective({"server.host": args.host, "server.port": args.port})

    import uvicorn
    from .server.app import create_app

    app = create_app(settings)
    log.info(
        "starting vibecoder: host=%s port=%s cwd=%s mode=%s",
        effective["server.host"],
        effective["server.port"],
        effective["agent.cwd"] or ".",
        "socket" if settings.get("slack.app_token") else "http",
    )
    uvicorn.run(app, host=effective["server.host"], port=effective["server.port"], log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
