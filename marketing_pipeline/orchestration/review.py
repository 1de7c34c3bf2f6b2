from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID, uuid4

from ..core.errors import ReviewClosed
from ..core.logging import get_logger
from ..core.metrics import record_review_ticket_counts
from ..schemas.decisions import DecisionEvent, DecisionLogEntry, PipelineState
from ..services.decision_log import DecisionLogger
from ..utils.json_encoding import input_digest
from .circuit_breaker import BudgetLedger

logger = get_logger(name=__name__)


class ReviewStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


ACTIVE_STATUSES = frozenset({ReviewStatus.OPEN, ReviewStatus.IN_REVIEW})


@dataclass(slots=True)
class ReviewNote:
    note_id: UUID
    author: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class ReviewTicket:
    ticket_id: UUID
    task_id: str
    tenant_key: str
    status: ReviewStatus
    summary: str | None
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None
    sources: tuple[str, ...]
    escalation_payload: dict[str, Any]
    notes: list[ReviewNote] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": str(self.ticket_id),
            "task_id": self.task_id,
            "tenant_key": self.tenant_key,
            "status": self.status.value,
            "summary": self.summary,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "assigned_to": self.assigned_to,
            "sources": list(self.sources),
            "escalation_payload": self.escalation_payload,
            "notes": [
                {
                    "note_id": str(note.note_id),
                    "author": note.author,
                    "content": note.content,
                    "created_at": note.created_at.isoformat(),
                }
                for note in self.notes
            ],
        }


class ReviewStore:
    async def ensure_ticket(
        self,
        *,
        task_id: str,
        tenant_key: str,
        sources: Sequence[str],
        summary: str | None,
        payload: Mapping[str, Any],
        assigned_to: str | None,
    ) -> ReviewTicket:
        existing = await self.get_by_task(task_id)
        if existing is not None and existing.status in ACTIVE_STATUSES:
            return existing
        now = datetime.now(timezone.utc)
        ticket = ReviewTicket(
            ticket_id=uuid4(),
            task_id=task_id,
            tenant_key=tenant_key,
            status=ReviewStatus.OPEN,
            summary=summary,
            created_at=now,
            updated_at=now,
            assigned_to=assigned_to,
            sources=tuple(sources),
            escalation_payload=dict(payload),
        )
        return await self._create_ticket(ticket)

    async def add_note(self, ticket_id: UUID, *, author: str, content: str) -> ReviewNote:
        note = ReviewNote(note_id=uuid4(), author=author, content=content.strip(), created_at=datetime.now(timezone.utc))
        await self._append_note(ticket_id, note)
        return note

    async def assign(self, ticket_id: UUID, *, reviewer: str) -> ReviewTicket:
        ticket = await self._require(ticket_id)
        ticket.assigned_to = reviewer
        ticket.status = ReviewStatus.IN_REVIEW
        ticket.updated_at = datetime.now(timezone.utc)
        await self._replace_ticket(ticket)
        return ticket

    async def update_status(
        self,
        ticket_id: UUID,
        *,
        status: ReviewStatus,
        reviewer: str | None,
        summary: str | None = None,
    ) -> ReviewTicket:
        ticket = await self._require(ticket_id)
        ticket.status = status
        ticket.updated_at = datetime.now(timezone.utc)
        if reviewer:
            ticket.assigned_to = reviewer
        if summary:
            ticket.summary = summary
        await self._replace_ticket(ticket)
        return ticket

    async def list(self, *, status: ReviewStatus | None = None, tenant_key: str | None = None) -> list[ReviewTicket]:
        tickets = await self._list_all()
        return [
            ticket
            for ticket in tickets
            if (status is None or ticket.status == status) and (tenant_key is None or ticket.tenant_key == tenant_key)
        ]

    async def get(self, ticket_id: UUID) -> ReviewTicket | None:
        return await self._get_ticket(ticket_id)

    async def get_by_task(self, task_id: str) -> ReviewTicket | None:
        return await self._get_by_task(task_id)

    async def _require(self, ticket_id: UUID) -> ReviewTicket:
        ticket = await self.get(ticket_id)
        if ticket is None:
            raise KeyError("ticket_not_found")
        return ticket

    # Abstract hooks -----------------------------------------------------------------

    async def _create_ticket(self, ticket: ReviewTicket) -> ReviewTicket:
        raise NotImplementedError

    async def _append_note(self, ticket_id: UUID, note: ReviewNote) -> None:
        raise NotImplementedError

    async def _replace_ticket(self, ticket: ReviewTicket) -> None:
        raise NotImplementedError

    async def _list_all(self) -> list[ReviewTicket]:
        raise NotImplementedError

    async def _get_ticket(self, ticket_id: UUID) -> ReviewTicket | None:
        raise NotImplementedError

    async def _get_by_task(self, task_id: str) -> ReviewTicket | None:
        raise NotImplementedError


class InMemoryReviewStore(ReviewStore):
    def __init__(self) -> None:
        self._tickets: dict[UUID, ReviewTicket] = {}
        self._task_index: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def _create_ticket(self, ticket: ReviewTicket) -> ReviewTicket:
        async with self._lock:
            self._tickets[ticket.ticket_id] = ticket
            self._task_index[ticket.task_id] = ticket.ticket_id
        return self._clone(ticket)

    async def _append_note(self, ticket_id: UUID, note: ReviewNote) -> None:
        async with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise KeyError("ticket_not_found")
            ticket.notes.append(note)
            ticket.updated_at = note.created_at

    async def _replace_ticket(self, ticket: ReviewTicket) -> None:
        async with self._lock:
            if ticket.ticket_id not in self._tickets:
                raise KeyError("ticket_not_found")
            self._tickets[ticket.ticket_id] = self._clone(ticket)

    async def _list_all(self) -> list[ReviewTicket]:
        async with self._lock:
            return [self._clone(ticket) for ticket in self._tickets.values()]

    async def _get_ticket(self, ticket_id: UUID) -> ReviewTicket | None:
        async with self._lock:
            ticket = self._tickets.get(ticket_id)
            return None if ticket is None else self._clone(ticket)

    async def _get_by_task(self, task_id: str) -> ReviewTicket | None:
        async with self._lock:
            ticket_id = self._task_index.get(task_id)
            if ticket_id is None:
                return None
            ticket = self._tickets.get(ticket_id)
            return None if ticket is None else self._clone(ticket)

    @staticmethod
    def _clone(ticket: ReviewTicket) -> ReviewTicket:
        return ReviewTicket(
            ticket_id=ticket.ticket_id,
            task_id=ticket.task_id,
            tenant_key=ticket.tenant_key,
            status=ticket.status,
            summary=ticket.summary,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            assigned_to=ticket.assigned_to,
            sources=tuple(ticket.sources),
            escalation_payload=dict(ticket.escalation_payload),
            notes=list(ticket.notes),
        )


class ReviewManager:
    """Human review queue for escalated pipeline tasks.

    Closing a ticket appends the reviewer's outcome to the task's decision log when a logger
    is attached. Resolving also commits the escalated budget deltas to the ledger, so later
    tasks see the spend the reviewer signed off on.
    """

    def __init__(
        self,
        *,
        store: ReviewStore | None = None,
        auto_assign_reviewer: str | None = None,
        decision_logger: DecisionLogger | None = None,
        ledger: BudgetLedger | None = None,
    ) -> None:
        self._store = store or InMemoryReviewStore()
        self._auto_assign = auto_assign_reviewer
        self._decision_logger = decision_logger
        self._ledger = ledger

    async def ensure_ticket(
        self,
        *,
        task_id: str,
        tenant_key: str,
        summary: str | None,
        payload: Mapping[str, Any],
        sources: Iterable[str],
    ) -> ReviewTicket:
        ticket = await self._store.ensure_ticket(
            task_id=task_id,
            tenant_key=tenant_key,
            sources=list(dict.fromkeys(source for source in sources if source)),
            summary=summary,
            payload=payload,
            assigned_to=self._auto_assign,
        )
        await self._refresh_metrics()
        logger.info(
            "review_ticket_issued",
            ticket_id=str(ticket.ticket_id),
            task_id=ticket.task_id,
            assigned_to=ticket.assigned_to,
        )
        return ticket

    async def list_tickets(
        self,
        status: ReviewStatus | None = None,
        *,
        tenant_key: str | None = None,
    ) -> list[ReviewTicket]:
        return await self._store.list(status=status, tenant_key=tenant_key)

    async def get_ticket(self, ticket_id: UUID) -> ReviewTicket | None:
        return await self._store.get(ticket_id)

    async def get_ticket_for_task(self, task_id: str) -> ReviewTicket | None:
        return await self._store.get_by_task(task_id)

    async def assign(self, ticket_id: UUID, *, reviewer: str) -> ReviewTicket:
        ticket = await self._store.assign(ticket_id, reviewer=reviewer)
        await self._refresh_metrics()
        return ticket

    async def add_note(self, ticket_id: UUID, *, author: str, content: str) -> ReviewNote:
        return await self._store.add_note(ticket_id, author=author, content=content)

    async def resolve(self, ticket_id: UUID, *, reviewer: str, summary: str | None = None) -> ReviewTicket:
        ticket = await self._close(ticket_id, ReviewStatus.RESOLVED, reviewer=reviewer, summary=summary)
        deltas = ticket.escalation_payload.get("applied_deltas") or {}
        if self._ledger is not None and deltas:
            async with self._ledger.hold(ticket.tenant_key, deltas):
                self._ledger.commit(ticket.tenant_key, deltas, baselines=ticket.escalation_payload["baselines"])
        logger.info("review_ticket_resolved", ticket_id=str(ticket_id), reviewer=reviewer, committed=bool(deltas))
        return ticket

    async def dismiss(self, ticket_id: UUID, *, reviewer: str, summary: str | None = None) -> ReviewTicket:
        ticket = await self._close(ticket_id, ReviewStatus.DISMISSED, reviewer=reviewer, summary=summary)
        logger.info("review_ticket_dismissed", ticket_id=str(ticket_id), reviewer=reviewer)
        return ticket

    async def _close(
        self,
        ticket_id: UUID,
        status: ReviewStatus,
        *,
        reviewer: str,
        summary: str | None,
    ) -> ReviewTicket:
        current = await self._store.get(ticket_id)
        if current is not None and current.status not in ACTIVE_STATUSES:
            raise ReviewClosed(f"ticket {ticket_id} is already {current.status.value}")
        ticket = await self._store.update_status(ticket_id, status=status, reviewer=reviewer, summary=summary)
        await self._refresh_metrics()
        await self._log_outcome(ticket, status, reviewer=reviewer)
        return ticket

    async def _log_outcome(self, ticket: ReviewTicket, status: ReviewStatus, *, reviewer: str) -> None:
        if self._decision_logger is None:
            return
        entries = await self._decision_logger.read_all(ticket.task_id)
        last = entries[-1] if entries else None
        event = DecisionEvent.REVIEW_RESOLVED if status is ReviewStatus.RESOLVED else DecisionEvent.REVIEW_DISMISSED
        committed = ticket.escalation_payload.get("applied_deltas") or {} if status is ReviewStatus.RESOLVED else {}
        output = {
            "ticket_id": str(ticket.ticket_id),
            "status": status.value,
            "reviewer": reviewer,
            "summary": ticket.summary,
            "applied_deltas": committed,
        }
        await self._decision_logger.append(
            DecisionLogEntry(
                task_id=ticket.task_id,
                sequence=last.sequence + 1 if last is not None else 0,
                tenant_key=ticket.tenant_key,
                objective=ticket.escalation_payload.get("objective") or (last.objective if last else ""),
                stage=PipelineState.ESCALATED,
                event=event,
                next_state=PipelineState.ESCALATED,
                input_digest=input_digest({"ticket_id": str(ticket.ticket_id), "status": status.value}),
                output=output,
                round=last.round if last is not None else 0,
                max_rounds=last.max_rounds if last is not None else 3,
            )
        )

    async def _refresh_metrics(self) -> None:
        tickets = await self._store.list()
        counts: dict[str, int] = defaultdict(int)
        for ticket in tickets:
            counts[ticket.status.value] += 1
        record_review_ticket_counts({status.value: counts.get(status.value, 0) for status in ReviewStatus})
