from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional

from storefront.config import Config
from storefront.errors import RemoteProviderError
from storefront.observability import increment_counter
from storefront.services.nets_client import NetsQrClient


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class NetsPaymentPoller:
    """
    Polls the NETS status endpoint and relays each answer as a server-sent
    event until the payment succeeds, fails, or the poll budget runs out.

    The generator is driven by the response stream; when the client goes away
    Flask closes it and polling stops at the next yield.
    """

    def __init__(
        self,
        client: NetsQrClient,
        interval_seconds: float = Config.NETS_POLL_INTERVAL_SECONDS,
        max_polls: int = Config.NETS_MAX_POLLS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.interval_seconds = interval_seconds
        self.max_polls = max_polls
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def stream(self, retrieval_ref: str, on_success: Optional[Callable[[], Any]] = None) -> Iterator[str]:
        polls = 0
        finished = False
        try:
            while polls < self.max_polls:
                self.sleep(self.interval_seconds)
                polls += 1
                # Last poll tells NETS the shopper-side timer has expired
                timeout_flag = 1 if polls >= self.max_polls else 0
                try:
                    status = self.client.query_transaction_status(retrieval_ref, timeout_flag)
                except RemoteProviderError as exc:
                    self.logger.warning("NETS status poll %d failed: %s", polls, exc.message)
                    finished = True
                    increment_counter("nets_polls_total", labels={"result": "error"})
                    yield sse_frame({"error": exc.message})
                    return

                yield sse_frame({"message": status.raw})

                if status.succeeded:
                    finished = True
                    if on_success is not None:
                        on_success()
                    increment_counter("nets_polls_total", labels={"result": "success"})
                    yield sse_frame({"success": True})
                    return
                if status.failed_after_timeout(timeout_flag):
                    finished = True
                    increment_counter("nets_polls_total", labels={"result": "failed"})
                    yield sse_frame({"fail": True, **status.raw})
                    return

            finished = True
            increment_counter("nets_polls_total", labels={"result": "timeout"})
            yield sse_frame({"fail": True, "error": "Timeout"})
        finally:
            if not finished:
                self.logger.info("NETS status stream for %s closed after %d polls", retrieval_ref, polls)
