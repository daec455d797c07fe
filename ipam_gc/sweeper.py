"""Cluster sweeper: full reconciliation of IPPool allocations against live Pods."""

import asyncio
from dataclasses import dataclass

from .context import EngineContext
from .errors import IPAMGCError, LeadershipLostError, NotFoundError
from .executor import ReleaseExecutorPool
from .models import IPAllocation, IPPool, PodSnapshot
from .workloads import OwnerKind


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    pools: int = 0
    allocations: int = 0
    released: int = 0
    released_ip_only: int = 0
    tracked: int = 0
    skipped: int = 0
    errors: int = 0
    aborted: bool = False


class ClusterSweeper:
    """
    Periodic self-healing pass over every allocated IP of every IPPool.

    Repairs whatever the event-driven path missed: watch gaps, restarts that
    lost the in-memory store, races between release paths. Mutations go
    through the executor pool, which re-checks leadership before each call.
    """

    def __init__(self, context: EngineContext, executor: ReleaseExecutorPool):
        """
        Initialize the sweeper.

        Args:
            context: Engine context
            executor: Executor pool issuing the release calls
        """
        self.context = context
        self.executor = executor
        self.gateway = context.gateway
        self.leader = context.leader
        self.store = context.store
        self.builder = context.builder
        self.identity_policy = context.identity_policy
        self.clock = context.clock
        self.interval = context.settings.default_gc_interval_seconds
        self.signal_gap = context.settings.gc_signal_gap_seconds
        self.logger = context.logger.getChild("sweeper")

        self._trigger = asyncio.Event()
        self.last_report: SweepReport | None = None

    def trigger(self) -> None:
        """Request a sweep now. Requests arriving before it starts collapse into one."""
        self._trigger.set()

    async def run(self) -> None:
        self.logger.info(f"Starting cluster sweeper, default interval {self.interval}s")
        self.logger.info("Initial sweep of the whole cluster")
        await self._run_sweep()

        while True:
            try:
                await asyncio.wait_for(self._trigger.wait(), timeout=self.interval)
                manual = True
            except asyncio.TimeoutError:
                manual = False

            if manual:
                self._trigger.clear()
                self.logger.info("Received GC request, sweep right now")
                await self._run_sweep()
                await asyncio.sleep(self.signal_gap)
            elif self.leader.is_leader():
                self.logger.info("Default GC interval elapsed, sweep right now")
                await self._run_sweep()

    async def _run_sweep(self) -> None:
        try:
            self.last_report = await self.sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Error sweeping IPPools: {e}", exc_info=True)

    async def sweep(self) -> SweepReport:
        """
        Reconcile every IPPool allocation once.

        Returns:
            SweepReport of the pass; aborted if this replica is or becomes a
            non-leader
        """
        report = SweepReport()
        if not self.leader.is_leader():
            self.logger.debug("Not the leader, skip sweeping")
            report.aborted = True
            return report

        try:
            pools = await self.gateway.list_ip_pools()
        except NotFoundError:
            self.logger.warning("Sweep failed, IPPool list not found")
            return report
        except IPAMGCError as e:
            self.logger.error(f"Sweep failed to list IPPools: {e}")
            report.errors += 1
            return report

        report.pools = len(pools)
        v6_pools = [pool for pool in pools if pool.ip_version == 6]
        v4_pools = [pool for pool in pools if pool.ip_version != 6]
        await asyncio.gather(
            self._sweep_pools(v4_pools, report),
            self._sweep_pools(v6_pools, report),
        )

        self.logger.info(
            f"Sweep finished: pools={report.pools} allocations={report.allocations} "
            f"released={report.released} released_ip_only={report.released_ip_only} "
            f"tracked={report.tracked} skipped={report.skipped} errors={report.errors}"
            + (" (aborted)" if report.aborted else "")
        )
        return report

    async def _sweep_pools(self, pools: list[IPPool], report: SweepReport) -> None:
        for pool in pools:
            self.logger.debug(f"Checking IPPool '{pool.name}'")
            for ip, allocation in self.gateway.list_ips_allocated_in_pool(pool).items():
                if report.aborted:
                    return
                report.allocations += 1
                try:
                    await self._sweep_ip(pool.name, ip, allocation, report)
                except LeadershipLostError:
                    self.logger.warning("Lost leadership while sweeping, stop this pass")
                    report.aborted = True
                    return
                except IPAMGCError as e:
                    report.errors += 1
                    self.logger.error(
                        f"Failed to check IPPool '{pool.name}' IP '{ip}' of pod "
                        f"{allocation.namespace}/{allocation.pod_name}: {e}"
                    )

    async def _sweep_ip(
        self, pool: str, ip: str, allocation: IPAllocation, report: SweepReport
    ) -> None:
        namespace, name = allocation.namespace, allocation.pod_name
        if not namespace or not name:
            self.logger.warning(f"IPPool '{pool}' IP '{ip}' has no owner pod, skip")
            report.skipped += 1
            return

        try:
            pod = await self.gateway.get_pod(namespace, name)
        except NotFoundError:
            await self._sweep_orphan(pool, ip, allocation, report)
            return

        plan = await self.builder.build(pod)
        if plan is not None:
            if self.clock() >= plan.stop_time:
                self.logger.info(
                    f"Pod {namespace}/{name} is out of time ({plan.reason.value}), "
                    f"release IPPool '{pool}' IP '{ip}'"
                )
                await self.executor.release_ip_and_remove_finalizer(pool, ip, allocation)
                report.released += 1
            elif self.leader.is_leader():
                self.store.apply(pod, plan)
                report.tracked += 1
                self.logger.info(
                    f"Tracing pod {namespace}/{name} ({plan.reason.value}) "
                    f"until {plan.stop_time.isoformat()}"
                )
            return

        if allocation.pod_uid and pod.uid and allocation.pod_uid != pod.uid:
            await self._sweep_previous_incarnation(pool, ip, allocation, pod, report)
            return

        if not allocation.container_id:
            return
        try:
            current = await self.gateway.check_current_container_id(
                namespace, name, allocation.container_id
            )
        except NotFoundError:
            self.logger.debug(f"WorkloadEndpoint {namespace}/{name} not found, skip IP '{ip}'")
            report.skipped += 1
            return
        if not current:
            self.logger.info(
                f"IPPool '{pool}' IP '{ip}' is bound to stale container "
                f"'{allocation.container_id}' of pod {namespace}/{name}, release it"
            )
            await self.executor.release_ip_only(pool, ip, allocation)
            report.released_ip_only += 1

    async def _sweep_orphan(
        self, pool: str, ip: str, allocation: IPAllocation, report: SweepReport
    ) -> None:
        namespace, name = allocation.namespace, allocation.pod_name
        try:
            wep = await self.gateway.get_wep(namespace, name)
        except NotFoundError:
            wep = None

        if wep is not None:
            kind = OwnerKind.parse(wep.owner_controller_type)
            if await self.identity_policy.is_pending_recreation(
                kind, namespace, name, wep.owner_controller_name
            ):
                self.logger.warning(
                    f"No need to release IP '{ip}' of {kind.value} pod {namespace}/{name}"
                )
                report.skipped += 1
                return

        self.logger.warning(
            f"Pod {namespace}/{name} not found but still holds IPPool '{pool}' "
            f"IP '{ip}', try to release it"
        )
        await self.executor.release_ip_and_remove_finalizer(pool, ip, allocation)
        report.released += 1

    async def _sweep_previous_incarnation(
        self,
        pool: str,
        ip: str,
        allocation: IPAllocation,
        pod: PodSnapshot,
        report: SweepReport,
    ) -> None:
        key = f"{pod.namespace}/{pod.name}"
        # a restarted static-identity Pod takes its IPs back from the WEP
        if pod.owner is not None and self.identity_policy.handles(
            OwnerKind.parse(pod.owner.kind)
        ):
            self.logger.debug(f"Static IP pod {key} just restarts, keep IP '{ip}'")
            report.skipped += 1
            return

        self.logger.warning(
            f"IPPool '{pool}' IP '{ip}' was allocated to pod UID {allocation.pod_uid}, "
            f"but pod {key} is now {pod.uid}, release it"
        )
        # the WEP belongs to the live Pod now, release the IP only
        await self.executor.release_ip_only(pool, ip, allocation)
        report.released_ip_only += 1
