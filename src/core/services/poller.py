"""Status polling for long-running video operations.

Job state lives on the server that accepted the job, so every poll goes to
the handle's server with the handle's token. `poll` is a single call; the
schedule (interval, timeout) belongs to the caller, see
`poll_until_terminal`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from adapters import backend_payloads
from core.domain.errors import AffinityViolationError, BackendError, ModelAccessDeniedError
from core.domain.models import (
    AffinityPair,
    GenerationKind,
    GenerationRequest,
    OperationHandle,
    StatusSnapshot,
    UserContext,
)
from core.services.dispatcher import GenerationDispatcher


logger = logging.getLogger(__name__)


class OperationPoller:
    def __init__(self, *, dispatcher: GenerationDispatcher) -> None:
        self._dispatcher = dispatcher

    async def poll(
        self,
        handle: OperationHandle,
        user: UserContext,
        affinity: AffinityPair | None = None,
    ) -> StatusSnapshot:
        if affinity is not None and affinity != handle.affinity:
            raise AffinityViolationError(
                f"Poll for operations created on {handle.affinity.server.url} "
                f"was attempted on {affinity.server.url} with token {affinity.credential.fingerprint}"
            )

        request = GenerationRequest.for_kind(
            GenerationKind.STATUS,
            backend_payloads.build_status_body(handle.operations),
        )
        try:
            result = await self._dispatcher.execute(
                request,
                user,
                handle.affinity.server,
                handle.affinity.credential,
            )
        except ModelAccessDeniedError as exc:
            # status checks have no model tier to fall back to
            raise BackendError(exc.message, status_code=exc.status_code) from exc
        operations = backend_payloads.extract_operations(result.data)
        for idx, op in enumerate(operations, start=1):
            logger.debug(
                "Operation %d status=%s error=%s name=%s",
                idx,
                op.get("status"),
                bool(op.get("error")),
                op.get("name") or (op.get("operation") or {}).get("name"),
            )
        return StatusSnapshot(
            operations=operations,
            state=backend_payloads.aggregate_state(operations),
            raw=result.data,
        )


async def poll_until_terminal(
    poller: OperationPoller,
    handle: OperationHandle,
    user: UserContext,
    *,
    interval_seconds: float,
    timeout_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_snapshot: Callable[[StatusSnapshot], None] | None = None,
) -> StatusSnapshot:
    """Re-invoke `poll` until a terminal state or the caller's timeout.

    Returns the last snapshot; a pending snapshot means the timeout hit.
    """

    deadline = time.monotonic() + timeout_seconds
    while True:
        snapshot = await poller.poll(handle, user)
        if on_snapshot:
            on_snapshot(snapshot)
        if snapshot.is_terminal or time.monotonic() >= deadline:
            return snapshot
        await sleep(interval_seconds)
