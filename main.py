"""Server entry point for the session replay ingestion service."""

import argparse
import logging
import signal
import sys

from session_replay.app import create_app
from session_replay.auth import TokenAuthenticator
from session_replay.config import load_server_config
from session_replay.errors import ConfigError


def _configure_logging(level: int):
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def serve(config):
    logger = logging.getLogger(__name__)
    app = create_app(config, start_reaper=True)
    reaper = app.config["components"]["reaper"]
    store = app.config["components"]["store"]

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_signal)

    logger.info(
        "Starting ingestion server on %s:%d (env=%s, db=%s)",
        config.host, config.port, config.app_env, config.database_path,
    )
    try:
        app.run(host=config.host, port=config.port, debug=False, threaded=True)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        reaper.stop()
        store.close()


def issue_token(config, application_id: str):
    auth = TokenAuthenticator(config.jwt_secret, config.jwt_expiration_hours)
    print(auth.issue(application_id))


def reap_once(config):
    logger = logging.getLogger(__name__)
    app = create_app(config)
    reaper = app.config["components"]["reaper"]
    report = reaper.sweep()
    logger.info(
        "Reaper pass: %d session(s), %d event(s) deleted, %d tombstone(s) purged",
        len(report.sessions), report.events_deleted, report.tombstones_purged,
    )
    app.config["components"]["store"].close()
    return 1 if report.failures else 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Session replay ingestion server")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="run the HTTP ingestion server (default)")
    token = sub.add_parser("token", help="print a bearer token for an application")
    token.add_argument("application_id")
    sub.add_parser("reap", help="purge expired sessions once and exit")
    args = parser.parse_args(argv)

    try:
        config = load_server_config()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    _configure_logging(config.logging_level)

    if args.command == "token":
        issue_token(config, args.application_id)
        return 0
    if args.command == "reap":
        return reap_once(config)
    serve(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
