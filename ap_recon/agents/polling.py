"""
Polling Orchestrator
Cooperative asyncio polling of File and Invoice records. Each tracked entity
gets at most one timer task, owned by a PollingCoordinator registry.
"""

import asyncio
import inspect
from typing import Optional, List, Dict, Callable, Awaitable, Union, Any

from ap_recon.exceptions import RecordStoreError, RecordNotFoundError
from ap_recon.schemas.records import Table, FileField, FileRecord, InvoiceRecord
from ap_recon.schemas.output import FileView, InvoiceView, UIStatus
from ap_recon.store.airtable import record_id_in, not_cleared, is_after, and_
from ap_recon.agents.status import build_file_view, build_invoice_view, polling_error_view
from ap_recon.utils.logging import setup_logging
from ap_recon.config import get_config


logger = setup_logging(__name__)
config = get_config()

View = Union[FileView, InvoiceView]
UpdateCallback = Callable[[str, View], Union[None, Awaitable[None]]]


class PollingCoordinator:
    """
    Registry of polling timers and in-flight operations, keyed by entity id.

    The entity id is the caller's handle (an upload id, say); the record id
    is the store id and defaults to the entity id. Start calls are
    idempotent, stop/cancel calls are safe to repeat, and a store failure
    publishes an error view and ends that entity's polling.
    """

    def __init__(self, store, interval: Optional[float] = None, on_update: Optional[UpdateCallback] = None):
        self.store = store
        self.interval = interval if interval is not None else config.POLL_INTERVAL_SECONDS
        self.on_update = on_update
        self.views: Dict[str, View] = {}
        self._pollers: Dict[str, asyncio.Task] = {}
        self._operations: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Single ticks
    # ------------------------------------------------------------------

    async def _fetch_invoices(self, invoice_ids: List[str]) -> List[InvoiceRecord]:
        if not invoice_ids:
            return []
        records = await self.store.list(Table.INVOICES, filter_formula=record_id_in(invoice_ids))
        by_id = {r.id: InvoiceRecord.from_store(r) for r in records}
        return [by_id[i] for i in invoice_ids if i in by_id]

    async def refresh_file(self, record_id: str) -> FileView:
        """Fetch a file and its invoices once and build its view."""
        record = await self.store.get(Table.FILES, record_id)
        if record is None:
            raise RecordNotFoundError(Table.FILES, record_id)
        file = FileRecord.from_store(record)
        invoices = await self._fetch_invoices(file.invoice_ids)
        return build_file_view(file, invoices)

    async def refresh_invoice(self, record_id: str) -> InvoiceView:
        """Fetch an invoice once and build its view."""
        record = await self.store.get(Table.INVOICES, record_id)
        if record is None:
            raise RecordNotFoundError(Table.INVOICES, record_id)
        return build_invoice_view(InvoiceRecord.from_store(record))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def is_polling(self, entity_id: str) -> bool:
        task = self._pollers.get(entity_id)
        return task is not None and not task.done()

    def start_file_polling(self, entity_id: str, record_id: Optional[str] = None) -> bool:
        """Start polling a file; False when it is already being polled."""
        record_id = record_id or entity_id
        return self._start(entity_id, lambda: self.refresh_file(record_id), self._file_placeholder(record_id))

    def start_invoice_polling(self, entity_id: str, record_id: Optional[str] = None) -> bool:
        """Start polling an invoice; False when it is already being polled."""
        record_id = record_id or entity_id
        return self._start(entity_id, lambda: self.refresh_invoice(record_id), self._invoice_placeholder(record_id))

    def _start(self, entity_id: str, refresh: Callable[[], Awaitable[View]], placeholder: View) -> bool:
        if self.is_polling(entity_id):
            logger.debug(f"[Polling] {entity_id} already polling")
            return False
        task = asyncio.create_task(self._poll(entity_id, refresh, placeholder))
        self._pollers[entity_id] = task
        logger.info(f"[Polling] Started polling {entity_id}")
        return True

    async def _poll(self, entity_id: str, refresh: Callable[[], Awaitable[View]], placeholder: View) -> None:
        try:
            while True:
                try:
                    view = await refresh()
                except RecordStoreError as e:
                    logger.error(f"[Polling] Fetch failed for {entity_id}, stopping: {e}")
                    previous = self.views.get(entity_id, placeholder)
                    await self._publish(entity_id, polling_error_view(previous, str(e)))
                    return

                await self._publish(entity_id, view)
                if view.is_terminal:
                    logger.info(f"[Polling] {entity_id} reached {view.ui_status.value}; stopping")
                    return
                await asyncio.sleep(self.interval)
        finally:
            if self._pollers.get(entity_id) is asyncio.current_task():
                del self._pollers[entity_id]

    async def _publish(self, entity_id: str, view: View) -> None:
        self.views[entity_id] = view
        if self.on_update is None:
            return
        result = self.on_update(entity_id, view)
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _file_placeholder(record_id: str) -> FileView:
        return FileView(record_id=record_id, ui_status=UIStatus.PROCESSING, progress=0)

    @staticmethod
    def _invoice_placeholder(record_id: str) -> InvoiceView:
        return InvoiceView(record_id=record_id, ui_status=UIStatus.PROCESSING)

    @staticmethod
    async def _cancel_task(task: asyncio.Task) -> None:
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop(self, entity_id: str) -> bool:
        """Stop polling an entity; False when it was not polling."""
        task = self._pollers.pop(entity_id, None)
        if task is None:
            return False
        await self._cancel_task(task)
        logger.info(f"[Polling] Stopped polling {entity_id}")
        return True

    # ------------------------------------------------------------------
    # In-flight operations
    # ------------------------------------------------------------------

    def track_operation(self, entity_id: str, operation: Awaitable[Any]) -> asyncio.Task:
        """Register an upload/matching coroutine so `cancel` can abort it."""
        task = asyncio.ensure_future(operation)
        self._operations[entity_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._operations.get(entity_id) is done:
                del self._operations[entity_id]

        task.add_done_callback(_forget)
        return task

    async def cancel(self, entity_id: str) -> bool:
        """Abort the entity's in-flight operation and its polling timer."""
        cancelled = False
        operation = self._operations.pop(entity_id, None)
        if operation is not None and not operation.done():
            await self._cancel_task(operation)
            cancelled = True
            logger.info(f"[Polling] Cancelled operation for {entity_id}")
        if await self.stop(entity_id):
            cancelled = True
        return cancelled

    async def clear_file(self, entity_id: str, record_id: Optional[str] = None) -> None:
        """Cancel everything for a file, then soft-delete it."""
        await self.cancel(entity_id)
        await self.store.update_one(Table.FILES, record_id or entity_id, {FileField.CLEARED: True})
        self.views.pop(entity_id, None)
        logger.info(f"[Polling] Cleared file {record_id or entity_id}")

    async def load_existing_files(self, since: Optional[str] = None) -> List[FileView]:
        """
        Views for all non-cleared files, newest first; non-terminal ones start polling.

        Args:
            since: ISO timestamp; only files whose status changed after it
        """
        formula = and_(
            not_cleared(),
            is_after(FileField.STATUS_MODIFIED_TIME, since) if since else "",
        )
        records = await self.store.list(
            Table.FILES,
            filter_formula=formula,
            sort=[{"field": FileField.CREATED_AT, "direction": "desc"}],
        )
        files = [FileRecord.from_store(r) for r in records]

        invoice_ids = [i for f in files for i in f.invoice_ids]
        invoices = {inv.id: inv for inv in await self._fetch_invoices(invoice_ids)}

        views = []
        for file in files:
            view = build_file_view(file, [invoices[i] for i in file.invoice_ids if i in invoices])
            await self._publish(file.id, view)
            views.append(view)
            if not view.is_terminal:
                self.start_file_polling(file.id)

        logger.info(f"[Polling] Loaded {len(views)} existing file(s)")
        return views

    async def shutdown(self) -> None:
        """Cancel every timer and operation."""
        for entity_id in list(self._operations):
            operation = self._operations.pop(entity_id)
            await self._cancel_task(operation)
        for entity_id in list(self._pollers):
            await self.stop(entity_id)
        logger.info("[Polling] Shut down")
