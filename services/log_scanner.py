#!/usr/bin/env python3
import logging
from typing import Dict, List, Optional

from services.chain_client import ChainClient, normalise_address
from services.exceptions import ChainError, RangeTooLargeError

logger = logging.getLogger(__name__)


class LogScanner:
    """
    Per-pool block watermark for polling swap logs.

    Each scan covers (watermark, current_block] in chunks of at most `chunk_size`
    blocks. A chunk that errors is logged and skipped; the watermark still moves
    to `current_block` so a bad range can never stall the scanner.
    """

    def __init__(self, chain: ChainClient, *, topic: str, chunk_size: int = 1000, min_chunk_size: int = 1):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chain = chain
        self.topic = topic
        self.chunk_size = chunk_size
        self.min_chunk_size = max(1, min_chunk_size)
        self._watermarks: Dict[str, int] = {}

    def watermark(self, pool: str) -> Optional[int]:
        return self._watermarks.get(normalise_address(pool))

    def set_watermark(self, pool: str, block: int) -> None:
        self._watermarks[normalise_address(pool)] = block

    def forget(self, pool: str) -> None:
        self._watermarks.pop(normalise_address(pool), None)

    def chunks(self, from_block: int, to_block: int) -> List[tuple]:
        ranges = []
        start = from_block
        while start <= to_block:
            end = min(start + self.chunk_size - 1, to_block)
            ranges.append((start, end))
            start = end + 1
        return ranges

    async def scan(self, pool: str, current_block: int) -> List[dict]:
        """Return the pool's swap logs since the last scan and advance its watermark."""
        key = normalise_address(pool)
        last_checked = self._watermarks.get(key)
        if last_checked is None:
            # first sight of this pool: start from the head, history is covered by the sweep
            self._watermarks[key] = current_block
            return []
        if current_block <= last_checked:
            return []

        logs: List[dict] = []
        for start, end in self.chunks(last_checked + 1, current_block):
            logs.extend(await self._fetch(key, start, end))
        self._watermarks[key] = current_block
        return logs

    async def _fetch(self, pool: str, start: int, end: int) -> List[dict]:
        try:
            return await self.chain.get_logs(address=pool, topics=[self.topic], from_block=start, to_block=end)
        except RangeTooLargeError as exc:
            span = end - start + 1
            if span <= self.min_chunk_size:
                logger.warning("Skipping blocks %s-%s for %s: %s", start, end, pool, exc)
                return []
            middle = start + span // 2 - 1
            logger.info("Range %s-%s too large for %s, splitting", start, end, pool)
            return await self._fetch(pool, start, middle) + await self._fetch(pool, middle + 1, end)
        except ChainError as exc:
            logger.warning("Skipping blocks %s-%s for %s: %s", start, end, pool, exc)
            return []
