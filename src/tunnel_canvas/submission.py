"""
Submission orchestrator for Tunnel-Canvas.

Turns the committed graph into tunnel-instance creation requests and
confirms the result through the control API event stream.  One cycle
runs through these states:

    IDLE -> PREFLIGHT -> AWAITING_CONFIRMATION -> SUBMITTING -> LISTENING -> DONE
                 \\______________________\\________________________________-> ABORTED

  1. PREFLIGHT      open the listen master's event stream and read one
                    chunk; failure aborts before anything is shown.
  2. enumeration    one ``InstancePlan`` per S/C node; nodes that cannot
                    be submitted are marked ``error`` and excluded.
  3. AWAITING_CONFIRMATION
                    plans grouped by master go to the operator callback;
                    nothing is created without a truthy answer.
  4. SUBMITTING     the handshake listener is attached first, then every
                    creation request is fired concurrently; each node's
                    outcome is recorded independently.
  5. LISTENING      the listener reports the first "Tunnel handshaked"
                    log line or times out.

Every task of a cycle belongs to a ``CancelScope``; starting a new cycle
or closing the orchestrator cancels the previous scope exactly once.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Optional, Union

import aiohttp

from .addressing import require_client_tunnel_address, resolution_failed
from .client import ControlApiClient
from .config import DEFAULT_HANDSHAKE_TIMEOUT, DEFAULT_PREFLIGHT_TIMEOUT, DEFAULT_REQUEST_TIMEOUT
from .errors import ConfirmationTimeout, ControlApiError, PreflightError, ResolutionError, SubmissionError
from .events import detect_handshake
from .instance_url import build_instance_url, params_from_node
from .models import MasterConfig, TopologyNode
from .store import GraphSnapshot, Notifier, TopologyGraph

logger = logging.getLogger(__name__)

# Provider error messages are cut to this many characters on the node
MAX_STATUS_MESSAGE = 30

MSG_MASTER_MISSING = "master config missing"
MSG_ADDRESS_INCOMPLETE = "address incomplete"
MSG_TUNNEL_UNRESOLVED = "tunnel address unresolved"

ConfirmCallback = Callable[[dict[str, list["InstancePlan"]]], Union[bool, Awaitable[bool]]]


class SubmissionState(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUBMITTING = "submitting"
    LISTENING = "listening"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class InstancePlan:
    """One instance-creation request derived from an ``S``/``C`` node.

    Attributes:
        node_id:    The node the instance is created for.
        node_label: Display label of that node.
        master:     Effective master config the request goes to.
        scheme:     ``server`` or ``client``.
        url:        Instance URL sent as the instance definition.
        kind:       Display kind: entry/exit server/client.  A node is an
                    entry when a user entry (U) feeds it.
    """
    node_id: str
    node_label: str
    master: MasterConfig
    scheme: str
    url: str
    kind: str

    @property
    def master_id(self) -> str:
        return self.master.id


@dataclass
class Exclusion:
    node_id: str
    message: str


@dataclass
class HandshakeResult:
    latency_ms: int
    master_id: str = ""


@dataclass
class SubmissionReport:
    """Outcome of one submission cycle."""
    state: SubmissionState = SubmissionState.IDLE
    plans: list[InstancePlan] = field(default_factory=list)
    exclusions: list[Exclusion] = field(default_factory=list)
    confirmed: bool = False
    succeeded: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    handshake: Optional[HandshakeResult] = None
    handshake_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "confirmed": self.confirmed,
            "plans": [
                {"node": p.node_id, "label": p.node_label, "master": p.master_id, "kind": p.kind, "url": p.url}
                for p in self.plans
            ],
            "excluded": {e.node_id: e.message for e in self.exclusions},
            "succeeded": dict(self.succeeded),
            "failed": dict(self.failed),
            "handshake_ms": self.handshake.latency_ms if self.handshake else None,
            "handshake_error": self.handshake_error,
        }


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelScope:
    """Owns the tasks of one submission cycle."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.cancelled = False

    def create_task(self, coro: Coroutine) -> asyncio.Task:
        if self.cancelled:
            coro.close()
            raise RuntimeError("Cannot start work in a cancelled scope")
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> bool:
        """Cancel every pending task.  Returns False if already cancelled."""
        if self.cancelled:
            return False
        self.cancelled = True
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        return True


# ---------------------------------------------------------------------------
# Enumeration
# ---------------------------------------------------------------------------

def instance_kind(node: TopologyNode, snapshot: GraphSnapshot) -> str:
    by_id = snapshot.nodes_by_id()
    entry = any(
        edge.target == node.id and by_id.get(edge.source) is not None and by_id[edge.source].role == "U"
        for edge in snapshot.edges
    )
    side = "entry" if entry else "exit"
    return f"{side} {'server' if node.role == 'S' else 'client'}"


def _cross_master_server(client: TopologyNode, snapshot: GraphSnapshot) -> Optional[TopologyNode]:
    by_id = snapshot.nodes_by_id()
    own_parent = by_id.get(client.parent) if client.parent else None
    for edge in snapshot.edges:
        if not edge.touches(client.id):
            continue
        other = by_id.get(edge.target if edge.source == client.id else edge.source)
        if other is None or other.role != "S" or not other.parent:
            continue
        other_parent = by_id.get(other.parent)
        if own_parent is not None and other_parent is not None and other_parent.master_id != own_parent.master_id:
            return other
    return None


def enumerate_instances(graph: TopologyGraph) -> tuple[list[InstancePlan], list[Exclusion]]:
    """Derive one plan per submittable ``S``/``C`` node.

    Exclusions, checked in order:
      - no parent master, or its config is unknown or lacks URL/token
      - a cross-master client whose tunnel address cannot be resolved
      - a missing tunnel or target address
    """
    snapshot = graph.snapshot()
    plans: list[InstancePlan] = []
    exclusions: list[Exclusion] = []

    for node in snapshot.nodes:
        if node.role not in ("S", "C"):
            continue

        master = graph.master_for_node(node)
        if master is None or not master.api_url or not master.token:
            exclusions.append(Exclusion(node.id, MSG_MASTER_MISSING))
            continue

        if node.role == "C":
            server = _cross_master_server(node, snapshot)
            if server is not None:
                try:
                    require_client_tunnel_address(server, graph.master_for_node(server))
                except ResolutionError as e:
                    logger.warning(f"Excluding {node.get_label()}: {e}")
                    exclusions.append(Exclusion(node.id, MSG_TUNNEL_UNRESOLVED))
                    continue
                if resolution_failed(node.tunnel_address):
                    exclusions.append(Exclusion(node.id, MSG_TUNNEL_UNRESOLVED))
                    continue

        if not node.tunnel_address.strip() or not node.target_address.strip():
            exclusions.append(Exclusion(node.id, MSG_ADDRESS_INCOMPLETE))
            continue

        params = params_from_node(node)
        plans.append(InstancePlan(
            node_id=node.id,
            node_label=node.get_label(),
            master=master,
            scheme=params.scheme,
            url=build_instance_url(params, master),
            kind=instance_kind(node, snapshot),
        ))

    return plans, exclusions


def group_by_master(plans: list[InstancePlan]) -> dict[str, list[InstancePlan]]:
    groups: dict[str, list[InstancePlan]] = {}
    for plan in plans:
        groups.setdefault(plan.master_id, []).append(plan)
    return groups


def _short_message(error: BaseException) -> str:
    if isinstance(error, (ControlApiError, SubmissionError)):
        text = error.message
    elif isinstance(error, asyncio.CancelledError):
        text = "cancelled"
    else:
        text = str(error) or error.__class__.__name__
    return text[:MAX_STATUS_MESSAGE]


def _log_listener_outcome(task: asyncio.Task) -> None:
    # Retrieves the result of listeners that nobody awaits
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.info(f"Handshake listener ended without a handshake: {error}")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SubmissionOrchestrator:
    """Drives submission cycles for one graph.

    The aiohttp session is created lazily unless one is passed in; only a
    self-created session is closed by ``close()``.
    """

    def __init__(
        self,
        graph: TopologyGraph,
        session: Optional[aiohttp.ClientSession] = None,
        listen_master_id: Optional[str] = None,
        notify: Optional[Notifier] = None,
        preflight_timeout: float = DEFAULT_PREFLIGHT_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.graph = graph
        self.listen_master_id = listen_master_id
        self.preflight_timeout = preflight_timeout
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.state = SubmissionState.IDLE

        self._session = session
        self._owns_session = session is None
        self._notify_cb = notify
        self._scope: Optional[CancelScope] = None
        self._listener: Optional[asyncio.Task] = None

    # --- plumbing ---

    def _notify(self, level: str, title: str, message: str = "") -> None:
        log = logger.warning if level in ("warning", "error") else logger.info
        log(f"{title}: {message}" if message else title)
        if self._notify_cb is not None:
            self._notify_cb(level, title, message)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout))
            self._owns_session = True
        return self._session

    def _client(self, master: MasterConfig) -> ControlApiClient:
        return ControlApiClient(master, self._get_session())

    def _new_scope(self) -> CancelScope:
        """Cancel the previous cycle, its listener included, and open a new scope."""
        if self._scope is not None:
            self._scope.cancel()
        self._cancel_listener()
        self._scope = CancelScope()
        return self._scope

    def _cancel_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()

    @property
    def listener(self) -> Optional[asyncio.Task]:
        """The handshake listener of the current cycle, if one was started."""
        return self._listener

    def listen_master(self) -> Optional[MasterConfig]:
        """Master whose event stream is used for preflight and handshake."""
        if self.listen_master_id:
            container = self.graph.master_node_for(self.listen_master_id)
            if container is not None:
                return self.graph.effective_master(container)
            return self.graph.masters.get(self.listen_master_id)
        for node in self.graph.nodes:
            master = self.graph.effective_master(node)
            if master is not None:
                return master
        return next(iter(self.graph.masters.values()), None)

    # --- phases ---

    async def preflight(self, master: Optional[MasterConfig] = None) -> None:
        """Check that the listen master's event stream answers.

        Raises ``PreflightError`` on any failure, including the timeout.
        """
        master = master or self.listen_master()
        if master is None:
            raise PreflightError("No master is available to listen on")
        if not master.api_url or not master.token:
            raise PreflightError(f"API config of master {master.get_label()} is incomplete")

        scope = self._scope or self._new_scope()
        client = self._client(master)

        async def first_chunk() -> None:
            async with client.open_events(timeout=aiohttp.ClientTimeout(total=None)) as response:
                chunk = await response.content.readany()
                if not chunk:
                    raise PreflightError("Event stream closed before any data arrived")

        try:
            await asyncio.wait_for(scope.create_task(first_chunk()), self.preflight_timeout)
        except asyncio.TimeoutError as e:
            raise PreflightError(f"No data from the event stream of {master.get_label()} within {self.preflight_timeout:g}s") from e
        except ControlApiError as e:
            raise PreflightError(f"Event stream of {master.get_label()} unreachable: {e.message}") from e
        logger.debug(f"Preflight against {master.events_url()} succeeded")

    def start_listener(self, master: MasterConfig) -> asyncio.Task:
        """Attach the handshake listener, replacing any previous one."""
        self._cancel_listener()
        self._listener = asyncio.ensure_future(self._listen(master))
        self._listener.add_done_callback(_log_listener_outcome)
        return self._listener

    async def _listen(self, master: MasterConfig) -> HandshakeResult:
        client = self._client(master)

        async def scan() -> HandshakeResult:
            async for event in client.events():
                latency = detect_handshake(event)
                if latency is not None:
                    return HandshakeResult(latency_ms=latency, master_id=master.id)
            raise ConfirmationTimeout("Event stream ended before a tunnel handshake was observed")

        try:
            result = await asyncio.wait_for(scan(), self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise ConfirmationTimeout(
                f"No tunnel handshake within {self.handshake_timeout:g}s; check the master logs"
            ) from e
        self._notify("info", "Tunnel handshake succeeded", f"Latency: {result.latency_ms}ms")
        return result

    async def wait_for_handshake(self, report: Optional[SubmissionReport] = None) -> Optional[HandshakeResult]:
        """Await the active listener; timeouts and stream errors are reported, not raised."""
        listener = self._listener
        if listener is None:
            return None
        try:
            result = await listener
        except asyncio.CancelledError:
            if listener.cancelled():
                return None
            raise
        except ConfirmationTimeout as e:
            self._notify("warning", "Listener timed out", str(e))
            if report is not None:
                report.handshake_error = str(e)
            return None
        except ControlApiError as e:
            self._notify("error", "Handshake listener error", e.message)
            if report is not None:
                report.handshake_error = e.message
            return None
        if report is not None:
            report.handshake = result
        return result

    async def _create(self, plan: InstancePlan) -> dict[str, Any]:
        try:
            return await self._client(plan.master).create_instance(plan.url)
        except ControlApiError as e:
            raise SubmissionError(plan.node_id, e.message) from e

    async def submit(
        self,
        plans: list[InstancePlan],
        listen_master: Optional[MasterConfig] = None,
        report: Optional[SubmissionReport] = None,
    ) -> SubmissionReport:
        """Fire every creation request concurrently and record each outcome."""
        report = report or SubmissionReport(plans=list(plans), confirmed=True)
        scope = self._scope or self._new_scope()
        self.state = SubmissionState.SUBMITTING
        self._notify("info", "Topology submitted", f"Creating {len(plans)} instance(s)...")

        if listen_master is not None:
            self.start_listener(listen_master)

        for plan in plans:
            self.graph.set_submission_status(plan.node_id, "pending")

        tasks = [scope.create_task(self._create(plan)) for plan in plans]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for plan, result in zip(plans, results):
            if isinstance(result, BaseException):
                message = _short_message(result)
                logger.error(f"Instance for {plan.node_label} on {plan.master.get_label()} failed: {result}")
                self.graph.set_submission_status(plan.node_id, "error", message)
                report.failed[plan.node_id] = message
                continue
            instance_id = str(result.get("id", "")) if isinstance(result, dict) else ""
            short_id = instance_id[:8]
            self.graph.set_submission_status(
                plan.node_id, "success", short_id or None,
                instance_id=instance_id or None, instance_url=plan.url,
            )
            report.succeeded[plan.node_id] = instance_id

        if report.failed:
            self._notify("warning", "Submission finished with errors", f"{len(report.succeeded)} created, {len(report.failed)} failed")
        else:
            self._notify("info", "Submission finished", f"{len(report.succeeded)} instance(s) created")
        return report

    async def run(
        self,
        confirm: Optional[ConfirmCallback] = None,
        wait_for_handshake: bool = True,
    ) -> SubmissionReport:
        """Run one full submission cycle.

        ``confirm`` receives the plans grouped by master id and may be
        sync or async; without one the cycle stops after enumeration.
        Raises ``PreflightError`` when the event stream is unreachable.
        """
        report = SubmissionReport()
        self._new_scope()

        self.state = SubmissionState.PREFLIGHT
        master = self.listen_master()
        try:
            await self.preflight(master)
        except PreflightError as e:
            self.state = report.state = SubmissionState.ABORTED
            self._notify("error", "Connection check failed", f"{e} Submission cancelled.")
            raise

        self.graph.reset_submission_status()
        plans, exclusions = enumerate_instances(self.graph)
        report.plans, report.exclusions = plans, exclusions
        for exclusion in exclusions:
            self.graph.set_submission_status(exclusion.node_id, "error", exclusion.message)

        if not plans:
            self._notify("info", "No instances to submit", "Configure valid server (S) / client (C) nodes.")
            self.state = report.state = SubmissionState.DONE
            return report

        self.state = SubmissionState.AWAITING_CONFIRMATION
        answer: Any = False
        if confirm is not None:
            answer = confirm(group_by_master(plans))
            if inspect.isawaitable(answer):
                answer = await answer
        if not answer:
            logger.info("Submission not confirmed; no instances created")
            self.state = report.state = SubmissionState.ABORTED
            return report
        report.confirmed = True

        await self.submit(plans, listen_master=master, report=report)

        if wait_for_handshake:
            self.state = SubmissionState.LISTENING
            await self.wait_for_handshake(report)
        self.state = report.state = SubmissionState.DONE
        return report

    async def close(self) -> None:
        """Cancel in-flight work and release the session if owned."""
        if self._scope is not None:
            self._scope.cancel()
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except (asyncio.CancelledError, ConfirmationTimeout, ControlApiError):
                pass
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.state = SubmissionState.IDLE
