"""Agent main loop - samples, enforces policy, publishes to the remote store."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from labwatch_agent.collector import MetricsSample, collect_metrics
from labwatch_agent.config import AgentConfig
from labwatch_agent.inbox import MessageInbox
from labwatch_agent.policy import ProcessPolicy
from labwatch_shared.channels import KILL_FORBIDDEN, CommandChannel, MessageChannel
from labwatch_shared.exceptions import StoreError
from labwatch_shared.machines import GroupPolicyStore, MachineRepository
from labwatch_shared.models import Message, MachineSnapshot
from labwatch_shared.paths import normalize_group
from labwatch_shared.store.base import RemoteStateStore
from labwatch_shared.timeutil import to_iso, utcnow, wait_or_stop

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TickReport:
    """Outcome of one tick. Store failures land in `errors`, never raised."""
    started_at: datetime
    snapshot: Optional[MachineSnapshot] = None
    published: bool = False
    history_key: Optional[str] = None
    class_mode: bool = False
    killed: List[str] = field(default_factory=list)
    command: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class AgentLoop:
    def __init__(
        self,
        config: AgentConfig,
        store: RemoteStateStore,
        policy: Optional[ProcessPolicy] = None,
        inbox: Optional[MessageInbox] = None,
        sampler: Callable[[str], MetricsSample] = collect_metrics,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.pc_name = config.machine_name
        self.machines = MachineRepository(store)
        self.groups = GroupPolicyStore(store)
        self.commands = CommandChannel(store)
        self.policy = policy or ProcessPolicy(config.policy.forbidden, config.policy.kill_cooldown)
        self.inbox = inbox or MessageInbox(
            MessageChannel(store),
            config.messages.state_file,
            config.messages.staleness,
            clock=clock,
        )
        self._sampler = sampler
        self._clock = clock
        self._monotonic = monotonic
        self.nickname = self.pc_name
        self.group = normalize_group(config.machine.group)
        self._last_history: Optional[float] = None
        self._stop = asyncio.Event()
        self.last_report: Optional[TickReport] = None

    async def _guard(self, report: TickReport, what: str, call: Awaitable[T], default: T = None) -> T:
        try:
            return await call
        except StoreError as e:
            logger.warning(f"{what} failed: {e}")
            report.errors.append(f"{what}: {e}")
            return default

    async def _in_executor(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _adopt(self, remote: Optional[MachineSnapshot]) -> None:
        """Adopt nickname/group written by a monitor."""
        if remote is None:
            return
        self.nickname = remote.nickname or self.pc_name
        self.group = remote.group

    async def register(self) -> None:
        """Create the snapshot on first run, otherwise keep the stored nickname/group."""
        existing = await self.machines.get_current(self.pc_name)
        if existing is not None:
            self._adopt(existing)
            logger.info(f"Registered as {self.pc_name} (nickname={self.nickname}, group={self.group})")
            return
        snapshot = MachineSnapshot(
            pc_name=self.pc_name,
            nickname=self.nickname,
            group=self.group,
            is_online=True,
            last_update=to_iso(self._clock()),
        )
        await self.machines.set_current(snapshot)
        logger.info(f"Created snapshot for {self.pc_name} in group {self.group}")

    def _build_snapshot(self, sample: MetricsSample, violations: List[str], class_mode: bool) -> MachineSnapshot:
        return MachineSnapshot(
            pc_name=self.pc_name,
            nickname=self.nickname,
            group=self.group,
            cpu_usage=sample.cpu_usage,
            cpu_temperature=sample.cpu_temperature,
            ram_usage_percent=sample.ram_usage_percent,
            used_ram_mb=sample.used_ram_mb,
            total_ram_mb=sample.total_ram_mb,
            disk_usage_percent=sample.disk_usage_percent,
            is_online=True,
            last_update=to_iso(self._clock()),
            forbidden_processes=violations,
            class_mode=class_mode,
            clock_issue=False,
        )

    async def tick(self) -> TickReport:
        report = TickReport(started_at=self._clock())

        remote = await self._guard(report, "Read snapshot", self.machines.get_current(self.pc_name))
        self._adopt(remote)

        sample = await self._in_executor(self._sampler, self.config.loop.disk_path)

        try:
            violations = await self._in_executor(self.policy.detect)
        except Exception as e:
            logger.warning(f"Process enumeration failed: {e}")
            report.errors.append(f"Process enumeration: {e}")
            violations = []

        # group state is authoritative, the snapshot mirror covers a failed lookup
        try:
            class_mode = await self.groups.get_class_mode(self.group)
        except StoreError as e:
            logger.warning(f"Class mode lookup failed: {e}")
            report.errors.append(f"Class mode lookup: {e}")
            class_mode = remote.class_mode if remote is not None else False
        report.class_mode = class_mode

        if class_mode and violations:
            try:
                killed = await self._in_executor(self.policy.enforce)
                if killed:
                    report.killed.extend(killed)
                    logger.info(f"Class mode: terminated {', '.join(killed)}")
                    violations = await self._in_executor(self.policy.detect)
            except Exception as e:
                logger.warning(f"Class mode enforcement failed: {e}")
                report.errors.append(f"Class mode enforcement: {e}")

        # merge a concurrent rename/regroup from a monitor before overwriting
        latest = await self._guard(report, "Re-read snapshot", self.machines.get_current(self.pc_name))
        self._adopt(latest)
        snapshot = self._build_snapshot(sample, violations, class_mode)
        report.snapshot = snapshot
        try:
            await self.machines.set_current(snapshot)
            report.published = True
        except StoreError as e:
            logger.warning(f"Publish failed: {e}")
            report.errors.append(f"Publish: {e}")

        now = self._monotonic()
        if self._last_history is None or now - self._last_history >= self.config.loop.history_interval:
            key = await self._guard(report, "History append", self.machines.append_history(snapshot))
            if key:
                self._last_history = now
                report.history_key = key

        await self._process_command(report)

        message = await self._guard(report, "Global message check", self.inbox.check_global())
        if message is not None:
            report.messages.append(message)
        message = await self._guard(report, "Group message check", self.inbox.check_group(self.group))
        if message is not None:
            report.messages.append(message)

        return report

    async def _process_command(self, report: TickReport) -> None:
        command = await self._guard(report, "Command fetch", self.commands.pending(self.pc_name))
        if not command:
            return
        report.command = command
        logger.info(f"Received command: {command}")
        if command == KILL_FORBIDDEN:
            try:
                killed = await self._in_executor(self.policy.kill_forbidden)
            except Exception as e:
                # a failed command is still acknowledged
                logger.warning(f"Command {command} failed: {e}")
                report.errors.append(f"Command {command}: {e}")
            else:
                report.killed.extend(k for k in killed if k not in report.killed)
        else:
            logger.warning(f"Unknown command {command!r}, acknowledging without execution")
        await self._guard(report, "Command acknowledge", self.commands.acknowledge(self.pc_name))

    async def run(self) -> None:
        """Register, then tick every `loop.interval` seconds until stop()."""
        try:
            await self.register()
        except StoreError as e:
            logger.warning(f"Registration failed: {e}. Continuing with local defaults")

        interval = self.config.loop.interval
        logger.info(f"Agent loop running for {self.pc_name} (interval {interval}s)")
        while not self._stop.is_set():
            started = self._monotonic()
            try:
                report = await self.tick()
            except Exception:
                logger.exception("Tick crashed")
            else:
                if self._stop.is_set():
                    # disposed while the tick was in flight
                    break
                self.last_report = report
            elapsed = self._monotonic() - started
            if await wait_or_stop(self._stop, interval - elapsed):
                break
        logger.info("Agent loop stopped")

    def stop(self) -> None:
        self._stop.set()
