from __future__ import annotations

import logging
import re

from agent_link.log_client import PayloadResolutionFailedError, TopicLogClient
from agent_link.models import Record

logger = logging.getLogger(__name__)

REFERENCE_RE = re.compile(r"^hcs://1/(\d+\.\d+\.\d+)$")


class LargePayloadResolver:
    """Swaps ``hcs://1/<topic>`` references for the content they point at."""

    def __init__(self, client: TopicLogClient, *, pattern: re.Pattern[str] = REFERENCE_RE) -> None:
        self.client = client
        self.pattern = pattern

    def is_reference(self, payload: str) -> bool:
        return self.pattern.match(payload.strip()) is not None

    async def resolve(self, reference: str) -> str:
        reference = reference.strip()
        if not self.is_reference(reference):
            raise PayloadResolutionFailedError(f"not a content reference: {reference!r}")

        logger.info("Resolving large payload %s", reference)
        try:
            content = await self.client.fetch_out_of_band(reference)
        except PayloadResolutionFailedError:
            raise
        except Exception as e:
            raise PayloadResolutionFailedError(f"fetch of {reference} failed: {e!r}") from e

        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadResolutionFailedError(f"{reference} is not valid UTF-8") from e
        logger.debug("Resolved %s (%d chars)", reference, len(text))
        return text

    async def resolve_payload(self, record: Record) -> str:
        if self.is_reference(record.payload):
            return await self.resolve(record.payload)
        return record.payload
