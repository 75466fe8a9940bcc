"""
Main entry point for the Volume Replicator.

Loads the configuration, campaigns for leadership and, while leading, runs
the informers and the replication controller.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import click

from api import ControllerStatus, HealthServer
from config import Config, get_config
from controller import Controller
from errors import ConfigurationError
from kube import ClusterCache, LeaderElector, ReplicationClient, load_kube_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Seconds to wait for informer threads after leadership ends
INFORMER_JOIN_TIMEOUT = 5.0


class Application:
    """Main application that orchestrates election, caches and controller."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.cache: Optional[ClusterCache] = None
        self.controller: Optional[Controller] = None
        self.elector: Optional[LeaderElector] = None
        self.health: Optional[HealthServer] = None
        self.running = False
        self.stop_task: Optional[asyncio.Task] = None

    def initialize(self):
        """
        Build all components.

        Raises:
            ConfigurationError: If the cluster configuration cannot be loaded
        """
        logger.info("Initializing Volume Replicator")
        api_client = load_kube_config(self.config.kubernetes.kubeconfig)

        self.cache = ClusterCache.from_api_client(
            api_client, resync_period=self.config.controller.resync_period
        )
        self.controller = Controller(
            self.cache,
            ReplicationClient.from_api_client(api_client),
            config=self.config.controller,
            replication=self.config.replication,
        )
        self.elector = LeaderElector.from_api_client(
            api_client,
            self.config.kubernetes.namespace,
            self.config.leader_election,
        )
        if self.config.api.enabled:
            self.health = HealthServer(self.config.api, self.status)

        logger.info("All components initialized")

    def status(self) -> ControllerStatus:
        return ControllerStatus(
            identity=self.config.leader_election.identity,
            is_leader=bool(self.elector and self.elector.is_leader),
            synced=bool(self.cache and self.cache.synced),
            queue_depth=len(self.controller.queue) if self.controller else 0,
            workers=self.config.controller.workers,
        )

    async def _lead(self):
        """Run the informers and the controller for as long as we lead."""
        self.cache.publish_to(self.controller.channel, asyncio.get_running_loop())
        self.cache.start()
        try:
            await self.cache.wait_for_sync()
            logger.info("All caches synced")
            await self.controller.start()
        finally:
            self.cache.stop()
            await asyncio.to_thread(self.cache.join, INFORMER_JOIN_TIMEOUT)

    def _on_stopped_leading(self):
        logger.info("Leadership lost, shutting down")

    async def _campaign(self):
        try:
            await self.elector.run(self._lead, self._on_stopped_leading)
        finally:
            await self.stop()

    async def start(self):
        """Start the application."""
        if not self.controller:
            self.initialize()

        self.running = True
        logger.info(
            f"Starting Volume Replicator as {self.config.leader_election.identity}"
        )

        tasks = [asyncio.create_task(self._campaign())]
        if self.health:
            tasks.append(asyncio.create_task(self.health.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    def request_stop(self) -> asyncio.Task:
        """Schedule stop() from a signal handler; repeated requests share one task."""
        if self.stop_task is None:
            self.stop_task = asyncio.create_task(self.stop())
        return self.stop_task

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Volume Replicator")
        self.running = False

        if self.controller:
            await self.controller.stop()
        if self.elector:
            self.elector.stop()
        if self.health:
            await self.health.stop()

        logger.info("Volume Replicator stopped")


async def main(config: Config):
    """Main entry point."""
    app = Application(config)
    app.initialize()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


@click.command()
@click.option("--kubeconfig", default=None, help="path to kubeconfig file")
@click.option("--namespace", default=None, help="deployment namespace")
@click.option(
    "--exclusion-regex", default=None, help="regex to exclude PVCs from replication"
)
@click.option("--workers", type=int, default=None, help="number of reconcile workers")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
)
def cli(kubeconfig, namespace, exclusion_regex, workers, log_level):
    """Replicate PersistentVolumeClaims through VolumeReplications."""
    config = get_config()
    if kubeconfig is not None:
        config.kubernetes.kubeconfig = kubeconfig
    if namespace is not None:
        config.kubernetes.namespace = namespace
    if exclusion_regex is not None:
        config.replication.exclusion_regex = exclusion_regex
    if workers is not None:
        config.controller.workers = workers
    if log_level is not None:
        config.api.log_level = log_level.upper()

    try:
        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e))

    logging.getLogger().setLevel(config.api.log_level.upper())

    try:
        asyncio.run(main(config))
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    cli()
