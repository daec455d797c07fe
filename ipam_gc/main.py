"""IP garbage collection engine main application."""

import asyncio
import logging
import signal
from typing import Optional

from ipam_gc import __version__
from ipam_gc.cluster import ClusterConnection
from ipam_gc.config import Settings, get_settings
from ipam_gc.context import EngineContext
from ipam_gc.election import LeaderGate, LeaseLeaderElector, StaticLeaderGate
from ipam_gc.engine import GCEngine
from ipam_gc.gateway import KubernetesGateway

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


class Application:
    """Main application orchestrator."""

    def __init__(self, settings: Settings):
        """
        Initialize application.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.cluster: Optional[ClusterConnection] = None
        self.engine: Optional[GCEngine] = None
        self._shutdown = False

    def _build_leader(self, cluster: ClusterConnection) -> LeaderGate:
        if not self.settings.leader_election_enabled:
            logger.info("Leader election disabled, acting as the only replica")
            return StaticLeaderGate(leader=True)
        return LeaseLeaderElector(
            cluster.coordination_v1,
            lease_name=self.settings.lease_name,
            lease_namespace=self.settings.lease_namespace,
            lease_duration_seconds=self.settings.lease_duration_seconds,
            renew_deadline_seconds=self.settings.lease_renew_deadline_seconds,
            retry_period_seconds=self.settings.lease_retry_period_seconds,
            logger=logging.getLogger("ipam_gc.election"),
        )

    async def start(self) -> None:
        """Start the application."""
        logger.info(f"Starting {self.settings.service_name}...")
        logger.info(f"   Version: {__version__}")
        logger.info(f"   Workers: {self.settings.release_ip_worker_num}")
        logger.info(f"   GC interval: {self.settings.default_gc_interval_seconds}s")

        self.cluster = ClusterConnection(
            kubeconfig_path=self.settings.kubeconfig_path,
            context=self.settings.kube_context,
        )
        if not await asyncio.to_thread(self.cluster.is_healthy):
            logger.warning("Kubernetes API server is not reachable yet, loops will retry")
        gateway = KubernetesGateway(
            self.cluster,
            max_conflict_retries=self.settings.max_conflict_retries,
            conflict_retry_unit_seconds=self.settings.conflict_retry_unit_seconds,
            logger=logging.getLogger("ipam_gc.gateway"),
        )
        context = EngineContext.create(
            self.settings,
            gateway,
            self._build_leader(self.cluster),
            logger=logging.getLogger("ipam_gc"),
        )

        self.engine = GCEngine(context, core_v1=self.cluster.core_v1)
        await self.engine.start()
        logger.info(f"{self.settings.service_name} started")

        # Run until shutdown signal
        try:
            while not self._shutdown:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Application cancelled")

    async def stop(self) -> None:
        """Stop the application."""
        logger.info(f"Shutting down {self.settings.service_name}...")
        self._shutdown = True

        if self.engine:
            await self.engine.stop()
        if self.cluster:
            self.cluster.close()

        logger.info(f"{self.settings.service_name} stopped")

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, initiating shutdown...")
        self._shutdown = True


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    app = Application(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    try:
        await app.start()
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
