"""Import phase: copies messages from the connected mailbox into the work queue.

Sent mail is imported before the inbox so the analysis phase always has the
workspace's own replies to learn from. The cursor records, per folder, the
provider page token and how many messages were fetched, so a resumed
invocation asks for exactly the next page.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contracts.config import IMPORT_TARGETS
from ..contracts.functions import IMPORT_FUNCTION
from ..contracts.jobs import JobKind
from ..db.work_items import WorkItemRepository
from ..integration.mail_provider import FOLDERS, MailProvider, MessagePage
from .base import BatchResult, PhaseContext, PhaseDependencies, PhaseHandler, ProcessedBatch

ImportBatch = Tuple[str, MessagePage]


class ImportHandler(PhaseHandler[ImportBatch]):
    kind = JobKind.IMPORT
    function_name = IMPORT_FUNCTION

    def __init__(
        self,
        deps: PhaseDependencies,
        items: WorkItemRepository,
        mail_factory: Callable[[str], MailProvider],
    ) -> None:
        super().__init__(deps)
        self.items = items
        self.mail_factory = mail_factory
        self._mail: Optional[MailProvider] = None

    def import_target(self, ctx: PhaseContext) -> int:
        mode = ctx.phase_input.get("import_mode") or self.config.import_mode
        return IMPORT_TARGETS.get(mode, self.config.import_target)

    def folder_target(self, ctx: PhaseContext) -> int:
        return max(1, self.import_target(ctx) // len(FOLDERS))

    def prepare(self, ctx: PhaseContext) -> None:
        ctx.cursor.setdefault("page_tokens", {})
        ctx.cursor.setdefault("imported", {folder: 0 for folder in FOLDERS})
        ctx.cursor.setdefault("exhausted", [])
        self._mail = self.mail_factory(ctx.workspace_id)
        if ctx.job.items_total == 0:
            updated = self.deps.jobs.set_items_total(ctx.job.id, self.import_target(ctx))
            if updated is not None:
                ctx.job = updated

    def _current_folder(self, ctx: PhaseContext) -> Optional[str]:
        exhausted = ctx.cursor["exhausted"]
        return next((folder for folder in FOLDERS if folder not in exhausted), None)

    def claim_batch(self, ctx: PhaseContext) -> Optional[ImportBatch]:
        folder = self._current_folder(ctx)
        if folder is None:
            return None
        ctx.cursor["folder"] = folder
        wanted = self.folder_target(ctx) - ctx.cursor["imported"].get(folder, 0)
        page = self._mail.list_messages(
            folder,
            ctx.cursor["page_tokens"].get(folder),
            min(self.batch_size, wanted),
        )
        return folder, page

    def process_batch(self, ctx: PhaseContext, batch: ImportBatch) -> ProcessedBatch:
        folder, page = batch
        processed = ProcessedBatch()
        for message in page.messages:
            processed.outputs[message.external_id] = message.to_row(folder)
        return processed

    def persist(self, ctx: PhaseContext, batch: ImportBatch, processed: ProcessedBatch) -> BatchResult:
        folder, page = batch
        rows: List[Dict[str, Any]] = list(processed.outputs.values())
        inserted = self.items.upsert_items(ctx.workspace_id, rows)

        imported = ctx.cursor["imported"]
        imported[folder] = imported.get(folder, 0) + len(page.messages)
        ctx.cursor["page_tokens"][folder] = page.next_page_token
        if not page.messages or not page.next_page_token or imported[folder] >= self.folder_target(ctx):
            ctx.cursor["exhausted"].append(folder)
            ctx.log.info("Finished importing %s after %d messages", folder, imported[folder])
        return BatchResult(succeeded=inserted)

    def remaining(self, ctx: PhaseContext) -> int:
        return len([folder for folder in FOLDERS if folder not in ctx.cursor.get("exhausted", [])])

    def finalize(self, ctx: PhaseContext) -> Dict[str, Any]:
        # The mailbox may hold fewer messages than the mode allows.
        if ctx.job.items_total != ctx.job.items_done:
            updated = self.deps.jobs.set_items_total(ctx.job.id, ctx.job.items_done)
            if updated is not None:
                ctx.job = updated
        return {"imported": ctx.job.items_done}

    def close(self) -> None:
        close = getattr(self._mail, "close", None)
        if callable(close):
            close()
        self._mail = None
