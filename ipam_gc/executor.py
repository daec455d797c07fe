"""Release executor pool: the only writer of IPPool and WorkloadEndpoint state."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .context import EngineContext
from .errors import IPAMGCError, LeadershipLostError, NotFoundError
from .models import IPAllocation, ReleaseRequest, WorkloadEndpoint
from .workloads import OwnerKind


@dataclass
class ReleaseStats:
    """Counters of mutating calls issued by the pool."""

    requests: int = 0
    released_ips: int = 0
    release_failures: int = 0
    finalizers_removed: int = 0
    finalizer_failures: int = 0


class ReleaseExecutorPool:
    """
    Fixed-size pool of workers draining the release queue.

    Every IP release is idempotent: a record that is already gone counts as
    released, so racing the CNI release path or another worker is harmless.
    """

    def __init__(self, context: EngineContext):
        """
        Initialize the pool.

        Args:
            context: Engine context
        """
        self.context = context
        self.gateway = context.gateway
        self.leader = context.leader
        self.store = context.store
        self.queue = context.release_queue
        self.worker_num = context.settings.release_ip_worker_num
        self.logger = context.logger.getChild("executor")
        self.stats = ReleaseStats()

    async def run(self) -> None:
        """Run the workers until cancelled."""
        self.logger.info(f"Starting {self.worker_num} IP release workers")
        workers = [
            asyncio.create_task(self._worker(index), name=f"release-worker-{index}")
            for index in range(1, self.worker_num + 1)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(self, index: int) -> None:
        log = self.logger.getChild(f"worker-{index}")
        while True:
            request = await self.queue.get()
            try:
                await self.process(request, log)
            except Exception as e:
                log.error(f"Error releasing IPs of pod {request.key}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def _ensure_leader(self) -> None:
        if not self.leader.is_leader():
            raise LeadershipLostError("this replica is not the leader")

    async def process(
        self, request: ReleaseRequest, log: Optional[logging.Logger] = None
    ) -> bool:
        """
        Release every IP a workload ever held and drop its WEP finalizer.

        Args:
            request: Release request
            log: Logger to use, the pool logger by default

        Returns:
            True if the workload's IPs and finalizer were handled
        """
        log = log or self.logger
        self.stats.requests += 1

        if not self.leader.is_leader():
            log.info(f"Not the leader, skip releasing IPs of pod {request.key}")
            return False

        try:
            wep = await self.gateway.get_wep(request.namespace, request.pod_name)
        except NotFoundError:
            log.info(
                f"WorkloadEndpoint {request.key} not found, "
                "maybe already cleaned by the CNI release path or the sweep"
            )
            self.store.delete(request.pod_name, request.namespace)
            return True
        except IPAMGCError as e:
            log.error(f"Failed to get WorkloadEndpoint {request.key}: {e}")
            return False

        if request.uid and wep.current_uid and wep.current_uid != request.uid:
            # a new Pod reuses the name; the sweep handles the old allocations
            log.info(
                f"Pod {request.key} UID {request.uid} differs from WorkloadEndpoint "
                f"UID {wep.current_uid}, leave it to the sweep"
            )
            self.store.delete(request.pod_name, request.namespace)
            return False

        try:
            for pool, records in self.gateway.list_historical_ips(wep).items():
                for record in records:
                    self._ensure_leader()
                    log.info(
                        f"Pod {request.key} used IP '{record.ip}' from pool '{pool}', "
                        f"begin to release ({request.reason.value})"
                    )
                    try:
                        await self._release(pool, record.ip, record.container_id)
                    except IPAMGCError as e:
                        log.error(
                            f"Failed to release pool '{pool}' IP '{record.ip}' "
                            f"of WorkloadEndpoint {request.key}: {e}"
                        )

            self._ensure_leader()
            await self._finalize(wep, delete_any=False, log=log)
        except LeadershipLostError:
            log.warning(f"Lost leadership while releasing IPs of pod {request.key}, stop")
            return False

        self.store.delete(request.pod_name, request.namespace)
        return True

    async def release_ip_and_remove_finalizer(
        self, pool: str, ip: str, allocation: IPAllocation
    ) -> None:
        """
        Release one orphaned IP and retire its owner's WorkloadEndpoint.

        Raises:
            LeadershipLostError: If this replica is not the leader
            IPAMGCError: If the IP could not be released
        """
        self._ensure_leader()
        await self._release(pool, ip, allocation.container_id)
        self.logger.info(f"Released IP '{ip}' from pool '{pool}'")

        try:
            wep = await self.gateway.get_wep(allocation.namespace, allocation.pod_name)
        except NotFoundError:
            self.logger.debug(
                f"WorkloadEndpoint {allocation.namespace}/{allocation.pod_name} "
                "is already cleaned up"
            )
            return

        self._ensure_leader()
        # StatefulSet and KubeVirt endpoints carry no ownerRef, nothing cascades
        await self._finalize(wep, delete_any=True, log=self.logger)

    async def release_ip_only(self, pool: str, ip: str, allocation: IPAllocation) -> None:
        """
        Release one IP bound to a stale container, keeping the WorkloadEndpoint.

        Raises:
            LeadershipLostError: If this replica is not the leader
            IPAMGCError: If the IP could not be released
        """
        self._ensure_leader()
        await self._release(pool, ip, allocation.container_id)
        self.logger.info(
            f"Released IP '{ip}' from pool '{pool}' bound to stale container "
            f"'{allocation.container_id}'"
        )

    async def _release(self, pool: str, ip: str, container_id: str) -> bool:
        try:
            removed = await self.gateway.release_ip(pool, ip, container_id)
        except IPAMGCError:
            self.stats.release_failures += 1
            raise
        self.stats.released_ips += 1
        return removed

    async def _finalize(
        self, wep: WorkloadEndpoint, delete_any: bool, log: logging.Logger
    ) -> None:
        key = f"{wep.namespace}/{wep.name}"
        static = OwnerKind.parse(wep.owner_controller_type) != OwnerKind.OTHER
        if wep.deletion_timestamp is None and (delete_any or static):
            try:
                await self.gateway.delete_wep(wep)
            except IPAMGCError as e:
                log.error(f"Failed to delete WorkloadEndpoint {key}: {e}")

        try:
            await self.gateway.remove_finalizer(wep)
        except IPAMGCError as e:
            self.stats.finalizer_failures += 1
            log.error(f"Failed to remove WorkloadEndpoint {key} finalizer: {e}")
            return

        self.stats.finalizers_removed += 1
        log.info(f"Removed WorkloadEndpoint {key} finalizer")
