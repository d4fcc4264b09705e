"""Trigger matcher: turns CRM events into workflow runs.

For every published workflow in the event's organization whose trigger
listens for the event type, the trigger's filters (``to_stage_id``,
``tag_id``) are compared with the event payload. Each match gets a new
run positioned at the trigger node, which is then handed to the
executor.

A contact can only have one active run per definition version. The
unique ``active_key`` on run_instances enforces this across processes;
a second event while a run is active is dropped and logged.

Events for the same contact are handled one at a time, in the order they
arrive, so runs are created in event order.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import TriggerEventType
from core.exceptions import GraphParseError
from db.models.run import RunInstance
from db.models.workflow import WorkflowDefinition
from services.workflow_service import WorkflowService
from triggers.base import TriggerEvent, matches_filters
from workflow.engine import AdvanceOutcome, RunExecutor
from workflow.graph import TriggerConfig, WorkflowGraph
from workflow.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Outcome of routing one event."""

    event_id: str
    matched: int = 0
    deduplicated: int = 0
    runs: list[RunInstance] = field(default_factory=list)
    outcomes: list[AdvanceOutcome] = field(default_factory=list)
    ignored_reason: Optional[str] = None


@dataclass
class _SubjectLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TriggerMatcher:
    """Routes trigger events to published workflows.

    Args:
        session_factory: Used to read published definitions
        store: Creates runs
        executor: Advances created runs
        max_chain_depth: Follow-up events deeper than this are dropped
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: RunStore,
        executor: RunExecutor,
        max_chain_depth: int = 3,
    ):
        self._session_factory = session_factory
        self.store = store
        self.executor = executor
        self.max_chain_depth = max_chain_depth
        self._subject_locks: dict[tuple[str, str], _SubjectLock] = {}

    async def on_event(self, event: TriggerEvent) -> MatchResult:
        """Match ``event`` against published workflows and start runs.

        Args:
            event: Incoming CRM event

        Returns:
            MatchResult with the created runs and their first advance
        """
        result = MatchResult(event_id=event.event_id)
        if event.chain_depth > self.max_chain_depth:
            logger.warning(
                f"Dropping {event.type.value} event {event.event_id} for subject {event.subject_id}: "
                f"chain depth {event.chain_depth} exceeds {self.max_chain_depth}"
            )
            result.ignored_reason = "chain_depth_exceeded"
            return result

        async with self._subject_lock(event.organization_id, event.subject_id):
            for definition, graph in await self._candidates(event):
                trigger = graph.trigger
                if not matches_filters(trigger.config.filters(), event):
                    continue
                result.matched += 1
                run = await self.store.create(
                    definition,
                    subject_id=event.subject_id,
                    start_node_id=trigger.id,
                    trigger_event=event.to_dict(),
                    chain_depth=event.chain_depth,
                )
                if run is None:
                    result.deduplicated += 1
                    logger.info(
                        f"Subject {event.subject_id} already has an active run of "
                        f"workflow {definition.workflow_id} v{definition.version}, event dropped"
                    )
                    continue
                result.runs.append(run)

        for run in result.runs:
            result.outcomes.append(await self.executor.advance(run.id))

        logger.info(
            f"Event {event.type.value} ({event.event_id}) for subject {event.subject_id}: "
            f"{result.matched} matched, {len(result.runs)} started, {result.deduplicated} deduplicated"
        )
        return result

    async def start_manual(self, definition: WorkflowDefinition, subject_id: str, payload: dict) -> Optional[AdvanceOutcome]:
        """Start a run of ``definition`` for ``subject_id`` without filter matching.

        Returns:
            The first advance outcome, or None when deduplicated
        """
        graph = self._parse(definition)
        if graph is None or graph.trigger is None:
            raise GraphParseError([f"definition {definition.id} has no usable trigger"])

        event = TriggerEvent(
            type=TriggerEventType(graph.trigger.config.trigger_type),
            organization_id=definition.organization_id,
            subject_id=subject_id,
            payload={**payload, "manual": True},
        )
        async with self._subject_lock(definition.organization_id, subject_id):
            run = await self.store.create(
                definition,
                subject_id=subject_id,
                start_node_id=graph.trigger.id,
                trigger_event=event.to_dict(),
            )
        if run is None:
            return None
        return await self.executor.advance(run.id)

    @asynccontextmanager
    async def _subject_lock(self, organization_id: str, subject_id: str):
        """Hold the contact's lock; the entry is dropped once nobody holds or waits for it."""
        key = (organization_id, subject_id)
        entry = self._subject_locks.get(key)
        if entry is None:
            entry = self._subject_locks[key] = _SubjectLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._subject_locks[key]

    async def _candidates(self, event: TriggerEvent) -> list[tuple[WorkflowDefinition, WorkflowGraph]]:
        async with self._session_factory() as session:
            definitions = await WorkflowService(session).list_published_for_trigger(
                event.organization_id, event.type.value
            )

        candidates = []
        for definition in definitions:
            graph = self._parse(definition)
            if graph is None:
                continue
            trigger = graph.trigger
            if trigger is None or not isinstance(trigger.config, TriggerConfig):
                continue
            candidates.append((definition, graph))
        return candidates

    def _parse(self, definition: WorkflowDefinition) -> Optional[WorkflowGraph]:
        cached = self.executor.cached_graph(definition.id)
        if cached is not None:
            return cached
        try:
            graph = WorkflowGraph.from_json(definition.graph)
        except GraphParseError as e:
            logger.error(f"Published definition {definition.id} has an invalid graph: {e.message}")
            return None
        self.executor.cache_graph(definition.id, graph)
        return graph
