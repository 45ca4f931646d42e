"""Sampling and privacy filtering applied to every captured event."""

import logging
import random
from dataclasses import replace

from session_replay.config import RecordingConfig
from session_replay.matchers import ElementMatcher, PageMatcher
from session_replay.metrics import RecorderMetrics
from session_replay.models import (
    Event,
    EventType,
    RawEvent,
    TEXT_FIELDS,
    create_event,
)

logger = logging.getLogger(__name__)

# Fixed length so the mask leaks nothing about the original value.
MASK_TOKEN = "********"


def mask_payload(event: Event, field_names) -> Event:
    """Return *event* with the named payload fields replaced by MASK_TOKEN.

    A dict field keeps its keys and has every non-null value masked.
    """
    changes = {}
    for name in field_names:
        value = getattr(event.data, name, None)
        if value is None:
            continue
        if isinstance(value, dict):
            changes[name] = {
                key: None if item is None else MASK_TOKEN
                for key, item in value.items()
            }
        else:
            changes[name] = MASK_TOKEN
    if not changes:
        return event
    return event.with_data(replace(event.data, **changes))


class SamplerFilter:
    """Decides whether a raw event is kept and redacts what is kept.

    One uniform draw per event decides sampling. Events originating from an
    excluded element (or inside one) or on an excluded page are dropped,
    never masked. Masking happens here so nothing reaches a batch unmasked.
    """

    def __init__(self, config: RecordingConfig, metrics: RecorderMetrics | None = None,
                 rng: random.Random | None = None):
        privacy = config.privacy_settings
        self._rate = config.sampling_rate
        self._mask_inputs = privacy.mask_inputs
        self._mask_text = privacy.mask_text_content
        self._elements = ElementMatcher(privacy.excluded_elements)
        self._pages = PageMatcher(privacy.excluded_pages)
        self._metrics = metrics
        self._rng = rng or random.Random()

    def admit(self, raw: RawEvent, session_id: str) -> Event | None:
        """Return the filtered Event, or None when the event is dropped."""
        if self._rng.random() >= self._rate:
            self._drop("sampled")
            return None

        if self._elements.matches(raw.element) or self._pages.matches(raw.page_url):
            self._drop("excluded")
            return None

        event = create_event(
            session_id=session_id,
            event_type=raw.type,
            data=raw.data,
            position=raw.position,
            timestamp=raw.timestamp,
            event_id=raw.id,
        )

        masked = self._mask(event)
        if self._metrics is not None:
            self._metrics.record_admitted(masked=masked is not event)
        return masked

    def _mask(self, event: Event) -> Event:
        names: set[str] = set()
        if self._mask_inputs and event.type is EventType.INPUT:
            names.add("value")
        if self._mask_text:
            names.update(TEXT_FIELDS.get(event.type, ()))
        if not names:
            return event
        return mask_payload(event, sorted(names))

    def _drop(self, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.record_dropped(reason)
        logger.debug("Dropped event (%s)", reason)
