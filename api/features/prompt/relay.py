"""Relay of one streaming completion onto a bounded, consumer-facing channel.

The upstream stream is pulled in a background task and every fragment is
pushed onto a ``FragmentChannel`` of capacity one. A push waits at most the
liveness timeout for the consumer to take the previous fragment; after that
the fragment is dropped so a stalled or absent consumer can never pin the
pull loop. Dropping only affects delivery: every pulled fragment is part of
the ``RelayOutcome`` handed to the completion callback.
"""
import asyncio
from typing import Any, AsyncIterator, Callable, List, Mapping, Optional, Protocol, Set

import structlog

from api.features.prompt.dtos import CompletionRequest, Fragment, RelayOutcome
from api.features.prompt.exceptions import (
    EndOfStream,
    UpstreamEstablishError,
    UpstreamStreamError,
)
from infra.metrics import RELAY_FRAGMENTS_DROPPED, UPSTREAM_ERRORS

LIVENESS_TIMEOUT = 5.0
API_TIMEOUT = 30.0

logger = structlog.get_logger("prompt.relay")


class CompletionSource(Protocol):
    """Opaque streaming completion upstream."""

    async def create_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        ...


class FragmentChannel:
    """Bounded channel of fragments, iterable until closed and drained."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Fragment]" = asyncio.Queue(maxsize=1)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def put(self, fragment: Fragment, timeout: float) -> bool:
        """Push a fragment, giving up after ``timeout`` seconds.

        Returns False when the fragment was dropped.
        """
        try:
            await asyncio.wait_for(self._queue.put(fragment), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def close(self) -> None:
        self._closed.set()

    def __aiter__(self) -> "FragmentChannel":
        return self

    async def __anext__(self) -> Fragment:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed.is_set():
                raise StopAsyncIteration

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                done, _ = await asyncio.wait(
                    {getter, closer}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                getter.cancel()
                closer.cancel()
            if getter in done:
                return getter.result()


class StreamRelay:
    """Turns a pull-based completion stream into a push-based fragment channel."""

    def __init__(
        self,
        source: CompletionSource,
        api_timeout: float = API_TIMEOUT,
        liveness_timeout: float = LIVENESS_TIMEOUT,
    ):
        self.source = source
        self.api_timeout = api_timeout
        self.liveness_timeout = liveness_timeout
        self._tasks: Set[asyncio.Task] = set()

    async def relay(
        self,
        request: CompletionRequest,
        on_complete: Callable[[RelayOutcome], None],
    ) -> FragmentChannel:
        """Open the upstream stream and start relaying it.

        Raises ``UpstreamEstablishError`` when the call cannot be opened; in
        that case no channel is produced and ``on_complete`` is never called.
        Otherwise ``on_complete`` is called exactly once, when the pull loop
        ends.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.api_timeout
        try:
            stream = await asyncio.wait_for(
                self.source.create_stream(request.to_payload()), self.api_timeout
            )
        except asyncio.TimeoutError as e:
            UPSTREAM_ERRORS.labels(kind="establish").inc()
            logger.error(
                "failed to create chat completion stream",
                error="timeout",
                timeout=self.api_timeout,
            )
            raise UpstreamEstablishError(
                f"no response within {self.api_timeout:g}s",
                {"timeout": self.api_timeout},
            ) from e
        except Exception as e:
            UPSTREAM_ERRORS.labels(kind="establish").inc()
            logger.error("failed to create chat completion stream", error=str(e))
            raise UpstreamEstablishError(str(e) or type(e).__name__) from e

        channel = FragmentChannel()
        task = asyncio.create_task(self._pump(stream, channel, deadline, on_complete))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return channel

    async def wait_idle(self) -> None:
        """Wait until every background pull loop has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _pump(
        self,
        stream: AsyncIterator[str],
        channel: FragmentChannel,
        deadline: float,
        on_complete: Callable[[RelayOutcome], None],
    ) -> None:
        loop = asyncio.get_running_loop()
        parts: List[str] = []
        dropped = 0
        error: Optional[BaseException] = None

        async def push(fragment: Fragment) -> None:
            nonlocal dropped
            if not await channel.put(fragment, self.liveness_timeout):
                dropped += 1
                RELAY_FRAGMENTS_DROPPED.inc()
                logger.warning(
                    "fragment dropped",
                    liveness_timeout=self.liveness_timeout,
                    terminal=fragment.is_terminal,
                )

        try:
            while True:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    content = await asyncio.wait_for(anext(stream), remaining)
                except StopAsyncIteration:
                    error = EndOfStream()
                except asyncio.TimeoutError:
                    error = UpstreamStreamError(
                        f"call exceeded {self.api_timeout:g}s timeout",
                        {"timeout": self.api_timeout},
                    )
                except Exception as e:
                    error = UpstreamStreamError(str(e) or type(e).__name__)

                if error is not None:
                    if not isinstance(error, EndOfStream):
                        UPSTREAM_ERRORS.labels(kind="stream").inc()
                        logger.error("stream error", error=str(error))
                    await push(Fragment(error=error))
                    break

                parts.append(content)
                await push(Fragment(content=content))
        finally:
            channel.close()
            await self._close_stream(stream)
            outcome = RelayOutcome(content="".join(parts), error=error, dropped=dropped)
            try:
                on_complete(outcome)
            except Exception:
                logger.exception("relay completion callback failed")

    @staticmethod
    async def _close_stream(stream: AsyncIterator[str]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("failed to close upstream stream", error=str(e))
