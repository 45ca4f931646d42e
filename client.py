"""Records synthetic interaction events against an ingestion server."""

import argparse
import logging
import random
import signal
import sys
import threading

from session_replay.config import load_recording_config
from session_replay.errors import ConfigError
from session_replay.models import ElementInfo, EventType, Position, RawEvent
from session_replay.recorder import SessionRecorder

PAGES = ["/", "/products", "/products/42", "/cart", "/account", "/checkout/payment"]
TARGETS = ["#search", "button.buy", "a.nav-link", "input#email", "div.card"]


def _random_event(rng: random.Random, page: str) -> RawEvent:
    """Build one synthetic raw event, roughly shaped like real traffic."""
    kind = rng.choices(
        [EventType.MOUSE_MOVE, EventType.MOUSE_CLICK, EventType.SCROLL,
         EventType.INPUT, EventType.DOM_MUTATION, EventType.VIEWPORT, EventType.ERROR],
        weights=[50, 10, 15, 10, 10, 3, 2],
    )[0]
    url = f"https://shop.example.com{page}"
    position = Position(x=rng.randint(0, 1440), y=rng.randint(0, 900))

    if kind is EventType.MOUSE_MOVE:
        return RawEvent(kind, {"buttons": 0}, position=position, page_url=url)
    if kind is EventType.MOUSE_CLICK:
        target = rng.choice(TARGETS)
        return RawEvent(kind, {"button": 0, "target": target}, position=position, page_url=url,
                        element=ElementInfo(tag=target.split(".")[0].split("#")[0] or "div"))
    if kind is EventType.SCROLL:
        return RawEvent(kind, {"scrollX": 0, "scrollY": rng.randint(0, 4000)}, page_url=url)
    if kind is EventType.INPUT:
        return RawEvent(
            kind,
            {"target": "input#email", "value": f"user{rng.randint(1, 999)}@example.com"},
            page_url=url,
            element=ElementInfo(tag="input", id="email", attributes={"type": "email"}),
        )
    if kind is EventType.DOM_MUTATION:
        return RawEvent(
            kind,
            {"mutation": "characterData", "target": "span.cart-count", "text": str(rng.randint(0, 9))},
            page_url=url,
        )
    if kind is EventType.VIEWPORT:
        return RawEvent(kind, {"width": rng.choice([375, 768, 1440]), "height": 900}, page_url=url)
    return RawEvent(kind, {"message": "TypeError: cannot read properties of undefined"}, page_url=url)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Session replay recorder client")
    parser.add_argument("--config", type=str, default="recorder.yaml")
    parser.add_argument("--endpoint", type=str, default=None)
    parser.add_argument("--token", type=str, default=None)
    parser.add_argument("--events-per-second", type=int, default=20)
    parser.add_argument("--run-time", type=int, default=30)
    args = parser.parse_args(argv)

    overrides: dict = {"networkConfig": {}}
    if args.endpoint:
        overrides["networkConfig"]["endpoint"] = args.endpoint
    if args.token:
        overrides["networkConfig"]["authToken"] = args.token

    try:
        config = load_recording_config(args.config, overrides)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    recorder = SessionRecorder(config)
    recorder.start()
    rng = random.Random()
    page = "/"
    interval = 1.0 / max(args.events_per_second, 1)

    try:
        for _ in range(args.run_time * args.events_per_second):
            if shutdown_event.is_set():
                break
            if rng.random() < 0.01:
                page = rng.choice(PAGES)
            recorder.record(_random_event(rng, page))
            shutdown_event.wait(interval)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        recorder.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
