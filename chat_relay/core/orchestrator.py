"""RequestOrchestrator: credential-rotating retry loop around one upstream request.

Per request::

    PREPARING -> CALLING -> SUCCEEDED
                         -> RETRYING -> CALLING
                         -> FAILED

``transition`` is the pure state function; ``RequestOrchestrator.run``
performs the side effects (storage, upstream calls, status messages).

The credential is taken from the pool at the start of each CALLING step
rather than once in PREPARING. Every attempt must use the next key in
rotation, so the first attempt sees the same key either way.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from enum import Enum

from ..types import (
    AssembledContext,
    AttachmentSegment,
    AttachmentStorageError,
    InputError,
    MessagingTransport,
    OrchestratorConfig,
    RelayRequest,
    RequestOutcome,
    RequestState,
    Role,
    TerminalUpstreamError,
    TransientUpstreamError,
    TurnStoreError,
    UpstreamModel,
    UpstreamResponse,
)
from .assembler import ContextAssembler, build_request_text
from .credential_pool import CredentialPool
from .references import with_reference
from .status import StatusMessage
from .store import AttachmentStore, TurnStore

logger = logging.getLogger(__name__)


class RequestEvent(str, Enum):
    PREPARED = "prepared"
    INPUT_ERROR = "input_error"
    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    TERMINAL_ERROR = "terminal_error"
    BACKOFF_ELAPSED = "backoff_elapsed"


def retry_limit(max_retries: int, credential_count: int) -> int:
    """Attempts allowed: rotating past the pool size cannot help."""
    return max(0, min(max_retries, credential_count))


def transition(
    state: RequestState,
    event: RequestEvent,
    attempts: int = 0,
    limit: int = 0,
) -> RequestState:
    """Next state for ``event``. ``attempts`` counts failed calls so far."""
    if state == RequestState.PREPARING:
        if event == RequestEvent.PREPARED:
            return RequestState.CALLING
        if event in (RequestEvent.INPUT_ERROR, RequestEvent.TERMINAL_ERROR):
            return RequestState.FAILED
    elif state == RequestState.CALLING:
        if event == RequestEvent.SUCCESS:
            return RequestState.SUCCEEDED
        if event == RequestEvent.TERMINAL_ERROR:
            return RequestState.FAILED
        if event == RequestEvent.TRANSIENT_ERROR:
            return RequestState.RETRYING if attempts < limit else RequestState.FAILED
    elif state == RequestState.RETRYING:
        if event == RequestEvent.BACKOFF_ELAPSED:
            return RequestState.CALLING
    raise ValueError(f"Invalid transition from {state.value} on {event.value}")


class RequestOrchestrator:
    """Serve one request: prepare context, call upstream with rotation, persist, reply."""

    def __init__(
        self,
        pool: CredentialPool,
        turn_store: TurnStore,
        attachment_store: AttachmentStore,
        upstream: UpstreamModel,
        transport: MessagingTransport,
        config: OrchestratorConfig | None = None,
        assembler: ContextAssembler | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.turn_store = turn_store
        self.attachment_store = attachment_store
        self.upstream = upstream
        self.transport = transport
        self.config = config or OrchestratorConfig()
        self.assembler = assembler or ContextAssembler(turn_store, attachment_store)
        self._sleep = sleep

    async def run(self, request: RelayRequest, status: StatusMessage | None = None) -> RequestOutcome:
        """Drive the request to SUCCEEDED or FAILED and deliver the result.

        The status message is always removed before the reply (or the single
        failure message) is sent.
        """
        status = status or StatusMessage(self.transport, request.chat_id)
        outcome = RequestOutcome(state=RequestState.PREPARING)
        context: AssembledContext | None = None
        response: UpstreamResponse | None = None

        try:
            try:
                context = await self._prepare(request)
                outcome.state = transition(outcome.state, RequestEvent.PREPARED)
            except InputError as e:
                outcome.errors.append(str(e))
                outcome.user_message = self.config.empty_input_message
                outcome.state = transition(outcome.state, RequestEvent.INPUT_ERROR)
            except AttachmentStorageError as e:
                logger.error("Error processing attachment: %s", e)
                outcome.errors.append(str(e))
                outcome.user_message = self.config.attachment_failure_message
                outcome.state = transition(outcome.state, RequestEvent.TERMINAL_ERROR)
            except Exception as e:
                logger.exception("Unexpected error preparing request for %s", request.chat_id)
                outcome.errors.append(str(e) or type(e).__name__)
                outcome.user_message = self.config.failure_message
                outcome.state = transition(outcome.state, RequestEvent.TERMINAL_ERROR)

            while outcome.state in (RequestState.CALLING, RequestState.RETRYING):
                if outcome.state == RequestState.RETRYING:
                    await status.update(self.config.retry_status)
                    await self._sleep(self.config.retry_backoff)
                    outcome.state = transition(outcome.state, RequestEvent.BACKOFF_ELAPSED)
                    continue

                try:
                    response = await self._call(request, context, outcome.attempts + 1)
                    outcome.state = transition(outcome.state, RequestEvent.SUCCESS)
                except TerminalUpstreamError as e:
                    outcome.attempts += 1
                    outcome.errors.append(str(e))
                    logger.error("Attempt %d failed with a terminal error: %s", outcome.attempts, e)
                    if e.content_blocked:
                        outcome.user_message = request.track.blocked_message
                    else:
                        outcome.user_message = e.user_message or self.config.failure_message
                    outcome.state = transition(outcome.state, RequestEvent.TERMINAL_ERROR)
                except Exception as e:
                    outcome.attempts += 1
                    outcome.errors.append(str(e) or type(e).__name__)
                    logger.error("Attempt %d failed: %s", outcome.attempts, e)
                    limit = retry_limit(self.config.max_retries, self.pool.count(request.service))
                    outcome.state = transition(
                        outcome.state, RequestEvent.TRANSIENT_ERROR, outcome.attempts, limit,
                    )
                    if outcome.state == RequestState.FAILED:
                        outcome.user_message = self.config.failure_message

            if outcome.state == RequestState.SUCCEEDED:
                try:
                    await self._persist_result(request, response, outcome)
                except Exception as e:
                    logger.exception("Error persisting reply for %s: %s", request.chat_id, e)
            else:
                logger.error(
                    "Request for %s failed after %d attempt(s): %s",
                    request.chat_id, outcome.attempts, outcome.errors,
                )
        finally:
            await status.clear()

        await self._deliver(request, response, outcome)
        return outcome

    async def _prepare(self, request: RelayRequest) -> AssembledContext:
        track = request.track
        text = request.text.strip()
        if not text and request.attachment is None:
            raise InputError("No content provided")

        current_segment: AttachmentSegment | None = None
        history_content = text
        if request.attachment is not None:
            saved = await asyncio.to_thread(
                self.attachment_store.save,
                request.chat_id, track.name,
                request.attachment.data, request.attachment.mime_type,
            )
            current_segment = AttachmentSegment(
                data=base64.b64encode(request.attachment.data).decode("ascii"),
                mime_type=request.attachment.mime_type,
                attachment_id=saved.id,
            )
            history_content = with_reference(track.upload_label, saved.id, text)

        try:
            current_turn = await asyncio.to_thread(
                self.turn_store.append,
                request.chat_id, track.name, Role.USER, history_content, request.sender,
            )
        except TurnStoreError as e:
            logger.error("Error saving message to history: %s", e)
            current_turn = None

        request_text = build_request_text(track, text, request.attachment is not None)
        context = await asyncio.to_thread(
            self.assembler.assemble,
            request.chat_id, track, request_text, current_segment, current_turn,
        )
        logger.info(
            "Assembled context for %s/%s: %d history turn(s), %d attachment(s)%s",
            request.chat_id, track.name, context.history_turns, context.attachment_count,
            " (truncated)" if context.truncated else "",
        )
        return context

    async def _call(self, request: RelayRequest, context: AssembledContext, attempt: int) -> UpstreamResponse:
        credential = self.pool.get(request.service)
        if credential is None:
            raise TransientUpstreamError(f"No API key available for {request.service}")

        logger.info(
            "[Attempt %d] Sending %d segment(s) to %s",
            attempt, len(context.segments), request.model_config.model,
        )
        try:
            response = await asyncio.wait_for(
                self.upstream.invoke(credential, context.segments, request.model_config),
                timeout=self.config.call_timeout,
            )
        except asyncio.TimeoutError:
            raise TransientUpstreamError(
                f"Upstream call timed out after {self.config.call_timeout}s"
            ) from None

        if request.track.produces_attachments and response.attachment is None:
            raise TerminalUpstreamError(
                "No image was generated in the response",
                content_blocked=True,
            )
        if response.attachment is None and not response.text.strip():
            raise TransientUpstreamError("Empty response from upstream")
        return response

    async def _persist_result(
        self,
        request: RelayRequest,
        response: UpstreamResponse,
        outcome: RequestOutcome,
    ) -> None:
        track = request.track
        outcome.response_text = response.text
        exists = await asyncio.to_thread(self.turn_store.exists, request.chat_id, track.name)
        if not exists:
            logger.warning(
                "History for %s/%s was cleared mid-request, not persisting the reply",
                request.chat_id, track.name,
            )
            return

        content = response.text
        if response.attachment is not None and track.result_label:
            try:
                saved = await asyncio.to_thread(
                    self.attachment_store.save,
                    request.chat_id, track.name,
                    response.attachment.data, response.attachment.mime_type,
                )
                outcome.attachment_id = saved.id
                content = with_reference(track.result_label, saved.id, response.text.strip())
            except AttachmentStorageError as e:
                logger.error("Error saving generated attachment: %s", e)

        try:
            turn = await asyncio.to_thread(
                self.turn_store.append,
                request.chat_id, track.name, Role.ASSISTANT, content, request.sender, False,
            )
        except TurnStoreError as e:
            logger.error("Error saving reply to history: %s", e)
            return
        if turn is None:
            logger.warning("History for %s/%s disappeared before the reply was saved", request.chat_id, track.name)

    async def _deliver(
        self,
        request: RelayRequest,
        response: UpstreamResponse | None,
        outcome: RequestOutcome,
    ) -> None:
        try:
            if outcome.state != RequestState.SUCCEEDED:
                await self.transport.send_text(request.chat_id, outcome.user_message)
            elif response.attachment is not None:
                await self.transport.send_image(
                    request.chat_id,
                    response.attachment.data,
                    response.attachment.mime_type,
                    caption=request.track.result_caption or response.text,
                )
            else:
                await self.transport.send_text(request.chat_id, response.text)
        except Exception as e:
            logger.error("Error delivering reply to %s: %s", request.chat_id, e)
