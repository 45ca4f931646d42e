"""Tests for sampling, exclusion and masking."""

import random

from session_replay.config import recording_config_from_dict
from session_replay.metrics import RecorderMetrics
from session_replay.models import ElementInfo, EventType, Position, RawEvent
from session_replay.sampler import MASK_TOKEN, SamplerFilter


def _sampler(rate=1.0, seed=7, **privacy):
    config = recording_config_from_dict({
        "applicationId": "app-1",
        "samplingRate": rate,
        "privacySettings": privacy,
    })
    metrics = RecorderMetrics()
    return SamplerFilter(config, metrics=metrics, rng=random.Random(seed)), metrics


def _input(value="hunter2", **kwargs):
    return RawEvent(EventType.INPUT, {"target": "input#pw", "value": value}, **kwargs)


class TestSampling:
    def test_rate_one_keeps_everything(self):
        sampler, metrics = _sampler(rate=1.0)
        kept = [sampler.admit(RawEvent(EventType.SCROLL, {"scrollX": 0, "scrollY": i}), "s")
                for i in range(200)]
        assert all(e is not None for e in kept)
        assert metrics.snapshot()["events_admitted"] == 200

    def test_rate_zero_drops_everything(self):
        sampler, metrics = _sampler(rate=0.0)
        for i in range(50):
            assert sampler.admit(RawEvent(EventType.SCROLL, {"scrollX": 0, "scrollY": i}), "s") is None
        assert metrics.snapshot()["events_dropped"]["sampled"] == 50

    def test_rate_is_statistical(self):
        sampler, _ = _sampler(rate=0.3, seed=1234)
        n = 10_000
        kept = sum(
            sampler.admit(RawEvent(EventType.SCROLL, {"scrollX": 0, "scrollY": 1}), "s") is not None
            for _ in range(n)
        )
        assert abs(kept / n - 0.3) < 0.03


class TestExclusion:
    def test_excluded_element_dropped(self):
        sampler, metrics = _sampler(excludedElements=[".sensitive-data"])
        raw = RawEvent(
            EventType.MOUSE_CLICK, {"button": 0}, position=Position(1, 1),
            element=ElementInfo(tag="div", classes=("sensitive-data",)),
        )
        assert sampler.admit(raw, "s") is None
        assert metrics.snapshot()["events_dropped"]["excluded"] == 1

    def test_excluded_page_dropped(self):
        sampler, _ = _sampler(excludedPages=["/account"])
        raw = RawEvent(EventType.SCROLL, {"scrollX": 0, "scrollY": 5},
                       page_url="https://shop.example.com/account/orders")
        assert sampler.admit(raw, "s") is None

    def test_other_pages_kept(self):
        sampler, _ = _sampler(excludedPages=["/account"])
        raw = RawEvent(EventType.SCROLL, {"scrollX": 0, "scrollY": 5},
                       page_url="https://shop.example.com/cart")
        assert sampler.admit(raw, "s") is not None


class TestMasking:
    def test_input_masked_by_default(self):
        sampler, metrics = _sampler()
        event = sampler.admit(_input("hunter2"), "s")
        assert event.data.value == MASK_TOKEN
        assert event.data.target == "input#pw"
        assert metrics.snapshot()["events_masked"] == 1

    def test_mask_length_is_fixed(self):
        sampler, _ = _sampler()
        short = sampler.admit(_input("a"), "s")
        long = sampler.admit(_input("a" * 64), "s")
        assert short.data.value == long.data.value == MASK_TOKEN

    def test_input_kept_when_masking_disabled(self):
        sampler, _ = _sampler(maskInputs=False)
        assert sampler.admit(_input("visible"), "s").data.value == "visible"

    def test_text_content_masking(self):
        sampler, _ = _sampler(maskTextContent=True)
        raw = RawEvent(EventType.DOM_MUTATION,
                       {"mutation": "childList", "target": "p", "text": "Jane Doe", "html": "<b>Jane</b>"})
        event = sampler.admit(raw, "s")
        assert event.data.text == MASK_TOKEN
        assert event.data.html == MASK_TOKEN
        assert event.data.target == "p"

        mutation = sampler.admit(RawEvent(EventType.DOM_MUTATION, {
            "mutation": "attributes", "target": "a",
            "attributes": {"title": "Jane Doe", "href": "/users/jane", "hidden": None},
        }), "s")
        assert mutation.data.attributes == {"title": MASK_TOKEN, "href": MASK_TOKEN, "hidden": None}

        error = sampler.admit(RawEvent(EventType.ERROR, {
            "message": "no account for jane@example.com",
            "stack": "at render (profile.js:12)",
            "source": "https://shop.example.com/u/jane",
            "line": 12,
        }), "s")
        assert error.data.message == MASK_TOKEN
        assert error.data.stack == MASK_TOKEN
        assert error.data.source == MASK_TOKEN
        assert error.data.line == 12

    def test_text_left_alone_by_default(self):
        sampler, _ = _sampler()
        raw = RawEvent(EventType.DOM_MUTATION, {"mutation": "characterData", "target": "p", "text": "hi"})
        assert sampler.admit(raw, "s").data.text == "hi"

    def test_session_and_timestamp_assigned(self):
        sampler, _ = _sampler()
        event = sampler.admit(RawEvent(EventType.VIEWPORT, {"width": 10, "height": 10}, timestamp=42), "sess-9")
        assert event.sessionId == "sess-9"
        assert event.timestamp == 42
