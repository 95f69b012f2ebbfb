"""
Sync orchestrator: initial and gap-fill backfill from the gateway.

Both sync types share one pipeline:

    enumerate chats (paginated, loop-safe)
      -> filter syncable chats
      -> per chat: resolve contact, fetch bounded history, write oldest-first
      -> advance watermark, mark COMPLETED

Traffic is shaped by ``RateLimitPolicy``. The gateway suspends channels
whose history sync arrives as a burst, so the delays must stay non-zero
in production.

Failures are isolated per message and per chat; only preconditions and
setup errors (session missing, first chat page failing) fail a run.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from chatsync.canonical import AckStatus, CanonicalMessage, canonicalize
from chatsync.config import Settings
from chatsync.contacts import ContactResolver, chat_address, chat_display_name
from chatsync.gateway import GatewayClient, GatewayError
from chatsync.logging_utils import bind_sync_session
from chatsync.metrics import record_sync_run
from chatsync.storage import get_channel_session
from chatsync.sync_state import (
    SyncType,
    acquire_sync_lock,
    mark_completed,
    mark_failed,
    mark_syncing,
    release_sync_lock,
)
from chatsync.utils import is_syncable_chat
from chatsync.writer import MessageWriter, advance_watermark

logger = logging.getLogger(__name__)

CONNECTED = "CONNECTED"


class SyncError(Exception):
    """Base error for sync orchestration."""


class SessionNotFoundError(SyncError):
    pass


class SessionNotConnectedError(SyncError):
    pass


class SyncAlreadyRunningError(SyncError):
    pass


class SyncCancelledError(SyncError):
    pass


@dataclass(frozen=True)
class RateLimitPolicy:
    chat_page_size: int = 100
    max_chat_pages: int = 50
    chats_per_batch: int = 10
    chat_batch_delay: float = 1.0
    per_chat_delay: float = 0.5
    messages_per_batch: int = 50
    message_batch_delay: float = 2.0
    max_messages_per_chat: int = 1000
    media_fetch_delay: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitPolicy":
        return cls(
            chat_page_size=settings.SYNC_CHAT_PAGE_SIZE,
            max_chat_pages=settings.SYNC_MAX_CHAT_PAGES,
            chats_per_batch=settings.SYNC_CHATS_PER_BATCH,
            chat_batch_delay=settings.SYNC_CHAT_BATCH_DELAY,
            per_chat_delay=settings.SYNC_PER_CHAT_DELAY,
            messages_per_batch=settings.SYNC_MESSAGES_PER_BATCH,
            message_batch_delay=settings.SYNC_MESSAGE_BATCH_DELAY,
            max_messages_per_chat=settings.SYNC_MAX_MESSAGES_PER_CHAT,
            media_fetch_delay=settings.SYNC_MEDIA_FETCH_DELAY,
        )


@dataclass(frozen=True)
class SyncProgress:
    chats_total: int
    chats_done: int
    messages_done: int
    current_chat: str


@dataclass
class SyncResult:
    session_id: str
    sync_type: str
    status: str = "COMPLETED"
    chats_total: int = 0
    chats_done: int = 0
    chats_synced: int = 0
    chats_failed: int = 0
    messages_synced: int = 0
    messages_failed: int = 0
    max_timestamp: Optional[int] = None
    watermark: Optional[int] = None
    error: Optional[str] = None


ProgressObserver = Callable[[SyncProgress], Any]


class SyncTask:
    """
    Handle to one background sync run.

    ``cancel`` sets the run's cancellation signal; the run stops at the next
    chat or message batch boundary and ends FAILED.
    """

    def __init__(self, session_id: str, sync_type: str):
        self.session_id = session_id
        self.sync_type = sync_type
        self.cancel_event = asyncio.Event()
        self.progress: Optional[SyncProgress] = None
        self.task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> SyncResult:
        return await self.task


def _chunks(items: list, size: int) -> list[list]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncOrchestrator:
    """
    Drive initial and gap-fill syncs for channel sessions.

    Args:
        gateway: Gateway client used for chat and message listing
        session_factory: Creates DB sessions; one is opened per unit of work
        resolver: Contact resolver
        writer: Idempotent message writer
        policy: Batch sizes and mandatory delays
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        gateway: GatewayClient,
        session_factory: Callable[[], Session],
        resolver: ContactResolver,
        writer: MessageWriter,
        policy: RateLimitPolicy = RateLimitPolicy(),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.resolver = resolver
        self.writer = writer
        self.policy = policy
        self.sleep = sleep
        self._tasks: dict[str, SyncTask] = {}
        self._observer_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def start(self, session_id: str, sync_type: str, on_progress: Optional[ProgressObserver] = None) -> SyncTask:
        """
        Validate preconditions, enter SYNCING and run the sync in the background.

        Raises:
            SessionNotFoundError, SessionNotConnectedError,
            SyncAlreadyRunningError: before any work begins
        """
        self._enter_syncing(session_id, sync_type)

        handle = SyncTask(session_id, sync_type)
        handle.task = asyncio.get_running_loop().create_task(self._execute(handle, on_progress))
        self._tasks[session_id] = handle

        def _forget(_: asyncio.Task) -> None:
            if self._tasks.get(session_id) is handle:
                del self._tasks[session_id]

        handle.task.add_done_callback(_forget)
        logger.info(f"Sync started in background: session={session_id}, type={sync_type}")
        return handle

    async def run_initial_sync(
        self,
        session_id: str,
        on_progress: Optional[ProgressObserver] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Enumerate every chat and backfill its bounded history."""
        return await self._run_now(session_id, SyncType.INITIAL.value, on_progress, cancel_event)

    async def run_gap_fill_sync(
        self,
        session_id: str,
        on_progress: Optional[ProgressObserver] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Backfill only messages strictly newer than the session watermark."""
        return await self._run_now(session_id, SyncType.GAP_FILL.value, on_progress, cancel_event)

    def get_task(self, session_id: str) -> Optional[SyncTask]:
        return self._tasks.get(session_id)

    def cancel(self, session_id: str) -> bool:
        handle = self._tasks.get(session_id)
        if handle is None or handle.done:
            return False
        logger.info(f"Sync cancellation requested: session={session_id}")
        handle.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel running syncs and wait for them to record their terminal state."""
        handles = list(self._tasks.values())
        for handle in handles:
            handle.cancel()
        tasks = [handle.task for handle in handles if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    async def _run_now(
        self,
        session_id: str,
        sync_type: str,
        on_progress: Optional[ProgressObserver],
        cancel_event: Optional[asyncio.Event],
    ) -> SyncResult:
        self._enter_syncing(session_id, sync_type)
        handle = SyncTask(session_id, sync_type)
        if cancel_event is not None:
            handle.cancel_event = cancel_event
        return await self._execute(handle, on_progress)

    def _enter_syncing(self, session_id: str, sync_type: str) -> None:
        with self.session_factory() as db:
            session = get_channel_session(db, session_id)
            if session is None:
                record_sync_run(sync_type, "rejected")
                raise SessionNotFoundError(f"Session not found: {session_id}")

            if not acquire_sync_lock(db, session_id, sync_type):
                record_sync_run(sync_type, "rejected")
                raise SyncAlreadyRunningError(f"A sync is already running for session {session_id}")

            if session.status != CONNECTED:
                message = f"Session must be CONNECTED to sync (current status: {session.status})"
                mark_failed(db, session_id, message)
                release_sync_lock(db, session_id)
                record_sync_run(sync_type, "rejected")
                raise SessionNotConnectedError(message)

            mark_syncing(db, session_id, sync_type)

    async def _execute(self, handle: SyncTask, on_progress: Optional[ProgressObserver]) -> SyncResult:
        result = SyncResult(session_id=handle.session_id, sync_type=handle.sync_type)

        with bind_sync_session(handle.session_id):
            try:
                await self._sync(handle, on_progress, result)
                self._complete(result)
                record_sync_run(handle.sync_type, "completed")
                logger.info(
                    f"Sync completed: {result.messages_synced} messages from "
                    f"{result.chats_synced}/{result.chats_total} chats"
                )
            except (SyncCancelledError, asyncio.CancelledError) as e:
                self._fail(result, "Sync cancelled")
                record_sync_run(handle.sync_type, "failed")
                if isinstance(e, asyncio.CancelledError):
                    raise
            except Exception as e:
                logger.exception(f"Sync failed: session={handle.session_id}")
                self._fail(result, str(e) or e.__class__.__name__)
                record_sync_run(handle.sync_type, "failed")
            finally:
                with self.session_factory() as db:
                    release_sync_lock(db, handle.session_id)

        return result

    def _complete(self, result: SyncResult) -> None:
        with self.session_factory() as db:
            session = get_channel_session(db, result.session_id)
            if session is not None:
                previous = session.last_message_timestamp
                if result.max_timestamp is not None and advance_watermark(db, result.session_id, result.max_timestamp):
                    logger.info(f"Watermark advanced: {previous} -> {result.max_timestamp}")
                db.refresh(session)
                result.watermark = session.last_message_timestamp
            mark_completed(db, result.session_id, result.messages_synced, result.chats_synced)
        result.status = "COMPLETED"

    def _fail(self, result: SyncResult, error: str) -> None:
        result.status = "FAILED"
        result.error = error
        with self.session_factory() as db:
            mark_failed(db, result.session_id, error, result.messages_synced, result.chats_synced)

    # -------------------------------------------------------------------------
    # Sync pipeline
    # -------------------------------------------------------------------------

    async def _sync(self, handle: SyncTask, on_progress: Optional[ProgressObserver], result: SyncResult) -> None:
        with self.session_factory() as db:
            session = get_channel_session(db, handle.session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {handle.session_id}")
            instance = session.session_name
            watermark = session.last_message_timestamp

        after = watermark if handle.sync_type == SyncType.GAP_FILL.value else None
        logger.info(f"Sync running: instance={instance}, type={handle.sync_type}, after={after}")

        chats = []
        for chat in await self.enumerate_chats(instance):
            address = chat_address(chat)
            if is_syncable_chat(address):
                chats.append(chat)
            else:
                logger.debug(f"Skipping non-syncable chat: {address!r}")
        result.chats_total = len(chats)
        logger.info(f"Found {len(chats)} syncable chats")

        batches = _chunks(chats, self.policy.chats_per_batch)
        for index, batch in enumerate(batches):
            for chat in batch:
                self._check_cancelled(handle)
                address = chat_address(chat)
                try:
                    await self._sync_chat(handle, instance, chat, after, result)
                    result.chats_synced += 1
                except SyncCancelledError:
                    raise
                except Exception:
                    logger.exception(f"Chat sync failed, skipping: {address}")
                    result.chats_failed += 1

                result.chats_done += 1
                self._emit_progress(handle, on_progress, SyncProgress(
                    chats_total=result.chats_total,
                    chats_done=result.chats_done,
                    messages_done=result.messages_synced,
                    current_chat=address,
                ))
                await self.sleep(self.policy.per_chat_delay)

            if index < len(batches) - 1:
                logger.debug(f"Chat batch done, waiting {self.policy.chat_batch_delay}s")
                await self.sleep(self.policy.chat_batch_delay)

    async def enumerate_chats(self, instance: str) -> list[dict]:
        """
        Collect chats page by page.

        Stops on an empty page, a short page, or a page with nothing new
        (the provider is repeating itself). ``max_chat_pages`` bounds the
        loop regardless of what the provider returns.
        """
        page_size = self.policy.chat_page_size
        seen: set[str] = set()
        chats: list[dict] = []

        for page in range(1, self.policy.max_chat_pages + 1):
            try:
                items = await self.gateway.list_chats(instance, page=page, page_size=page_size)
            except GatewayError:
                if page == 1:
                    raise
                logger.warning(f"Chat page {page} failed, keeping {len(chats)} chats collected so far", exc_info=True)
                break

            if not items:
                break

            new_items = 0
            for chat in items:
                address = chat_address(chat)
                if not address or address in seen:
                    continue
                seen.add(address)
                chats.append(chat)
                new_items += 1

            if new_items == 0:
                logger.warning(f"Chat page {page} repeated earlier pages; pagination is broken, stopping")
                break
            if len(items) < page_size:
                break
        else:
            logger.warning(f"Chat page ceiling ({self.policy.max_chat_pages}) reached, stopping enumeration")

        return chats

    async def _sync_chat(
        self,
        handle: SyncTask,
        instance: str,
        chat: dict,
        after: Optional[int],
        result: SyncResult,
    ) -> None:
        address = chat_address(chat)

        with self.session_factory() as db:
            contact_id = self.resolver.resolve_from_metadata(db, handle.session_id, address, chat_display_name(chat))
            self.resolver.update_chat_metadata(db, contact_id, chat)

        raw_messages = await self.gateway.list_messages(
            instance,
            address,
            limit=self.policy.max_messages_per_chat,
            after=after,
        )
        logger.info(f"Chat {address}: {len(raw_messages)} messages to write")
        if not raw_messages:
            return

        # Oldest first so the newest inbound name is applied last
        raw_messages.reverse()

        batches = _chunks(raw_messages, self.policy.messages_per_batch)
        for index, batch in enumerate(batches):
            self._check_cancelled(handle)
            media_work: list[tuple[int, CanonicalMessage]] = []
            with self.session_factory() as db:
                for raw in batch:
                    written = self._write_one(db, handle.session_id, raw, result)
                    if written is not None and written[1].has_media:
                        media_work.append(written)
            await self._fetch_media(handle, instance, media_work)

            if index < len(batches) - 1:
                await self.sleep(self.policy.message_batch_delay)

    def _write_one(
        self, db: Session, session_id: str, raw: dict, result: SyncResult
    ) -> Optional[tuple[int, CanonicalMessage]]:
        """Write one provider message; returns (row id, message) when inserted."""
        try:
            message = canonicalize(raw, default_ack=AckStatus.READ)
            contact_id = self.resolver.resolve_for_message(db, session_id, message)
            outcome = self.writer.write(
                db,
                session_id,
                contact_id,
                message,
                source="sync",
                schedule_media=False,
                track_watermark=False,
            )
        except Exception:
            db.rollback()
            key = raw.get("key") if isinstance(raw, dict) else None
            message_id = key.get("id") if isinstance(key, dict) else None
            logger.exception(f"Message skipped during sync: {message_id}")
            result.messages_failed += 1
            return None

        if outcome.inserted:
            result.messages_synced += 1
            if result.max_timestamp is None or message.timestamp > result.max_timestamp:
                result.max_timestamp = message.timestamp
            return outcome.message_id, message
        return None

    async def _fetch_media(
        self, handle: SyncTask, instance: str, work: list[tuple[int, CanonicalMessage]]
    ) -> None:
        """
        Store attachments of a batch one at a time.

        Each fetch is a gateway call, so fetches are spaced by
        ``media_fetch_delay`` and finish before the batch delay starts.
        """
        media = self.writer.media
        if media is None or not work:
            return
        for index, (message_pk, message) in enumerate(work):
            self._check_cancelled(handle)
            if index > 0:
                await self.sleep(self.policy.media_fetch_delay)
            await media.process(message_pk, message, session_name=instance)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_cancelled(handle: SyncTask) -> None:
        if handle.cancelled:
            raise SyncCancelledError("Sync cancelled")

    def _emit_progress(
        self,
        handle: SyncTask,
        observer: Optional[ProgressObserver],
        progress: SyncProgress,
    ) -> None:
        handle.progress = progress
        if observer is None:
            return
        try:
            outcome = observer(progress)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._observer_tasks.add(task)
                task.add_done_callback(self._observer_done)
        except Exception:
            logger.warning("Progress observer raised; ignoring", exc_info=True)

    def _observer_done(self, task: asyncio.Task) -> None:
        self._observer_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress observer failed: {task.exception()!r}")
