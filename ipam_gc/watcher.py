"""Pod watch stream feeding GC candidates into the liveness store."""

import asyncio
from dataclasses import dataclass, replace
from typing import Optional

from kubernetes import watch as k8s_watch
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from .context import EngineContext
from .errors import (
    GatewayError,
    IPAMGCError,
    NotFoundError,
    PodEntryNotFoundError,
    StoreCapacityError,
)
from .models import PodSnapshot, WorkloadEndpoint
from .store import TracingState

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass(frozen=True)
class PodEvent:
    """One Pod notification, or a get-by-key request when pod is None."""

    event_type: str
    namespace: str
    name: str
    pod: Optional[PodSnapshot] = None
    attempt: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


class PodEventWatcher:
    """
    Watches Pods cluster-wide and starts the grace-period clock of GC candidates.

    The blocking watch stream runs in a worker thread and hands events to the
    event loop through a bounded queue. Only the leader writes to the store.
    """

    def __init__(self, context: EngineContext, core_v1: Optional[CoreV1Api] = None):
        """
        Initialize the watcher.

        Args:
            context: Engine context
            core_v1: Core API client used for the watch stream; without one only
                reconcile and dispatch are usable
        """
        settings = context.settings
        self.context = context
        self.core_v1 = core_v1
        self.gateway = context.gateway
        self.leader = context.leader
        self.store = context.store
        self.builder = context.builder
        self.retry_seconds = settings.watch_retry_seconds
        self.watch_timeout_seconds = settings.watch_timeout_seconds
        self.max_retries = settings.reconcile_max_retries
        self.retry_delay = settings.reconcile_retry_delay_seconds
        self.logger = context.logger.getChild("watcher")

        self.queue: asyncio.Queue[PodEvent] = asyncio.Queue(
            maxsize=settings.pod_event_queue_size
        )
        self.synced = False
        self._stopped = False
        self._watch: Optional[k8s_watch.Watch] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._retries: set[asyncio.Task] = set()

    async def run(self) -> None:
        """Stream Pod events until cancelled, restarting the stream on failure."""
        if self.core_v1 is None:
            raise RuntimeError("PodEventWatcher.run requires a CoreV1Api client")
        self._loop = asyncio.get_running_loop()
        self._stopped = False
        self.logger.info("Starting watch on pods in all namespaces")
        try:
            while True:
                try:
                    await asyncio.to_thread(self._stream)
                    continue
                except ApiException as e:
                    self.logger.error(f"Error watching pods: {e.status} {e.reason}")
                except Exception as e:
                    self.logger.error(f"Error watching pods: {e}", exc_info=True)
                await asyncio.sleep(self.retry_seconds)
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop the watch stream and pending retries."""
        self._stopped = True
        if self._watch is not None:
            self._watch.stop()
        for task in list(self._retries):
            task.cancel()

    def _stream(self) -> None:
        self._watch = k8s_watch.Watch()
        try:
            for event in self._watch.stream(
                self.core_v1.list_pod_for_all_namespaces,
                timeout_seconds=self.watch_timeout_seconds,
            ):
                if self._stopped:
                    break
                self.synced = True
                obj = event["object"]
                if event["type"] not in (ADDED, MODIFIED, DELETED):
                    self.logger.debug(f"Ignore pod watch event {event['type']}")
                    continue
                pod = PodSnapshot.from_k8s(obj)
                self._loop.call_soon_threadsafe(
                    self.enqueue, PodEvent(event["type"], pod.namespace, pod.name, pod)
                )
            self.synced = True
        except ApiException as e:
            if e.status == 410:  # Resource version too old
                self.logger.warning("Watch expired, restarting...")
                return
            raise

    def enqueue(self, event: PodEvent) -> bool:
        """
        Hand an event to the dispatcher without blocking.

        Returns:
            False if the queue was full and the event was dropped
        """
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.logger.warning(
                f"Pod event queue is full ({self.queue.maxsize}), "
                f"drop {event.event_type} of pod {event.key}"
            )
            return False
        return True

    async def dispatch(self) -> None:
        """Drain the event queue until cancelled."""
        self.logger.info("Starting pod event dispatcher")
        while True:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
            except GatewayError as e:
                self._retry(event, e)
            except IPAMGCError as e:
                self.logger.error(f"Failed to handle pod {event.key}: {e}")
            except Exception as e:
                self.logger.error(f"Error handling pod {event.key}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def _retry(self, event: PodEvent, error: Exception) -> None:
        if event.attempt >= self.max_retries:
            self.logger.error(
                f"Failed to handle pod {event.key} after {event.attempt + 1} attempts: {error}"
            )
            return
        self.logger.warning(
            f"Failed to handle pod {event.key}, retry in {self.retry_delay}s: {error}"
        )
        # retries re-read the Pod instead of replaying a stale observation
        retry = replace(event, pod=None, attempt=event.attempt + 1)
        task = asyncio.create_task(self._requeue(retry))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue(self, event: PodEvent) -> None:
        await asyncio.sleep(self.retry_delay)
        self.enqueue(event)

    async def handle_event(self, event: PodEvent) -> None:
        if event.pod is None:
            await self.reconcile(event.namespace, event.name)
        elif event.event_type == DELETED:
            await self.handle_deleted(event.namespace, event.name, event.pod)
        else:
            await self.handle_pod(event.pod)

    async def reconcile(self, namespace: str, name: str) -> None:
        """
        Reconcile a Pod by key.

        Raises:
            GatewayError: If the Pod or its WorkloadEndpoint could not be read
        """
        try:
            pod = await self.gateway.get_pod(namespace, name)
        except NotFoundError:
            await self.handle_deleted(namespace, name)
            return
        await self.handle_pod(pod)

    async def handle_deleted(
        self, namespace: str, name: str, pod: Optional[PodSnapshot] = None
    ) -> None:
        """
        Start tracing a Pod whose object is gone.

        Args:
            namespace: Pod namespace
            name: Pod name
            pod: Last observation of the Pod, if the watch delivered one

        Raises:
            GatewayError: If the WorkloadEndpoint could not be read
        """
        key = f"{namespace}/{name}"
        if not self.leader.is_leader():
            return
        try:
            entry = self.store.get(name, namespace)
        except PodEntryNotFoundError:
            entry = None
        if entry is not None and entry.state == TracingState.TRACING:
            return

        if pod is None:
            if entry is None:
                self.logger.debug(f"Pod {key} is gone and not tracked, left to the sweep")
                return
            pod = PodSnapshot(
                name=name,
                namespace=namespace,
                uid=entry.uid,
                node_name=entry.node_name,
                phase=entry.pod_phase,
            )

        plan = await self.builder.build_deleted(pod)
        if plan is None:
            self.store.delete(name, namespace)
            return

        try:
            wep = await self.gateway.get_wep(namespace, name)
        except NotFoundError:
            self.logger.info(
                f"WorkloadEndpoint {key} not found, IPs of deleted pod were already released"
            )
            self.store.delete(name, namespace)
            return

        try:
            self.store.apply(pod, plan, self._traced_ips(wep))
        except StoreCapacityError as e:
            self.logger.warning(str(e))
            return
        self.logger.info(f"Tracing deleted pod {key} until {plan.stop_time.isoformat()}")

    async def handle_pod(self, pod: PodSnapshot) -> None:
        """
        Track a Pod and start its grace-period clock once it becomes a GC candidate.

        Raises:
            GatewayError: If a lookup needed to build the plan failed
            PodEntryBuildError: If the Pod name contradicts its owner kind
        """
        if not self.leader.is_leader():
            return
        key = f"{pod.namespace}/{pod.name}"

        try:
            entry = self.store.get(pod.name, pod.namespace)
        except PodEntryNotFoundError:
            entry = None
        if entry is not None and entry.state == TracingState.TRACING:
            # the first deadline wins, only refresh the observation
            self.store.update(pod)
            return

        plan = await self.builder.build(pod)
        if plan is None:
            # only GC candidates are stored
            if entry is not None:
                self.store.delete(pod.name, pod.namespace)
            return

        try:
            wep = await self.gateway.get_wep(pod.namespace, pod.name)
        except NotFoundError:
            self.logger.info(f"WorkloadEndpoint {key} not found, IPs of pod were already released")
            self.store.delete(pod.name, pod.namespace)
            return

        try:
            self.store.apply(pod, plan, self._traced_ips(wep))
        except StoreCapacityError as e:
            self.logger.warning(str(e))
            return
        self.logger.info(
            f"Tracing pod {key} ({plan.reason.value}) until {plan.stop_time.isoformat()}"
        )

    def _traced_ips(self, wep: WorkloadEndpoint) -> list[tuple[str, str]]:
        return [
            (pool, record.ip)
            for pool, records in self.gateway.list_historical_ips(wep).items()
            for record in records
        ]
