"""
Leader election on a coordination.k8s.io Lease.

Several replicas of the controller may run; only the one holding the lease
reconciles. The others keep retrying and take over once the lease has not
been renewed for a full lease duration.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from config import LeaderElectionConfig

logger = logging.getLogger(__name__)


class LeaderElector:
    """
    Acquire, renew and release a Lease.

    Expiry of a lease held by another identity is judged against the local
    monotonic clock from the moment its record last changed, so clock skew
    between replicas does not matter.
    """

    def __init__(
        self,
        api: client.CoordinationV1Api,
        namespace: str,
        config: Optional[LeaderElectionConfig] = None,
    ):
        self.api = api
        self.namespace = namespace
        self.config = config or LeaderElectionConfig()
        self.identity = self.config.identity
        self.is_leader = False
        self.observed_leader = ""

        self._observed_record: Optional[Tuple[Any, Any]] = None
        self._observed_time = 0.0
        self._stop = asyncio.Event()

    @classmethod
    def from_api_client(
        cls,
        api_client: client.ApiClient,
        namespace: str,
        config: Optional[LeaderElectionConfig] = None,
    ) -> "LeaderElector":
        return cls(client.CoordinationV1Api(api_client), namespace, config)

    def stop(self) -> None:
        self._stop.set()

    async def run(
        self,
        on_started_leading: Callable[[], Awaitable[None]],
        on_stopped_leading: Callable[[], None],
    ) -> None:
        """
        Campaign for leadership and run ``on_started_leading`` while leading.

        ``on_stopped_leading`` is called if the lease is lost; a requested
        stop releases the lease instead.
        """
        if not await self._acquire():
            return

        logger.info("Became leader, starting controller")
        leading = asyncio.create_task(on_started_leading())
        lost = False
        try:
            lost = not await self._renew_loop(leading)
        finally:
            self.is_leader = False
            if not lost and not leading.done():
                # Let in-flight work drain while the lease is still ours
                await asyncio.wait({leading}, timeout=self.config.renew_deadline)
            if not leading.done():
                leading.cancel()
            await asyncio.gather(leading, return_exceptions=True)
            if lost:
                logger.info("Lost leadership, exiting")
                on_stopped_leading()
            else:
                await self.release()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _acquire(self) -> bool:
        logger.info(
            f"attempting to acquire leader lease {self.namespace}/"
            f"{self.config.lease_name}"
        )
        while not self._stop.is_set():
            if await self.try_acquire_or_renew():
                self.is_leader = True
                return True
            await self._sleep(self.config.retry_period)
        return False

    async def _renew_loop(self, leading: asyncio.Task) -> bool:
        """Renew until stopped (True) or until a renewal deadline is missed (False)."""
        while not self._stop.is_set() and not leading.done():
            deadline = time.monotonic() + self.config.renew_deadline
            renewed = False
            while time.monotonic() < deadline and not self._stop.is_set():
                if await self.try_acquire_or_renew():
                    renewed = True
                    break
                await self._sleep(self.config.retry_period)

            if self._stop.is_set():
                return True
            if not renewed:
                logger.error(
                    f"failed to renew lease {self.namespace}/{self.config.lease_name} "
                    f"within {self.config.renew_deadline}s"
                )
                return False
            await self._sleep(self.config.retry_period)
        return True

    def _observe(self, spec: client.V1LeaseSpec) -> None:
        record = (spec.holder_identity, spec.renew_time)
        if record != self._observed_record:
            self._observed_record = record
            self._observed_time = time.monotonic()

        holder = spec.holder_identity or ""
        if holder and holder != self.observed_leader:
            self.observed_leader = holder
            logger.info(f"Current leader: {holder}")

    def _new_spec(self, now: datetime, transitions: int) -> client.V1LeaseSpec:
        return client.V1LeaseSpec(
            holder_identity=self.identity,
            lease_duration_seconds=self.config.lease_duration,
            acquire_time=now,
            renew_time=now,
            lease_transitions=transitions,
        )

    async def try_acquire_or_renew(self) -> bool:
        """One attempt to take or keep the lease."""
        now = datetime.now(timezone.utc)
        name = self.config.lease_name
        try:
            lease = await asyncio.to_thread(
                self.api.read_namespaced_lease, name, self.namespace
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(f"failed to read lease {self.namespace}/{name}: {e.reason}")
                return False
            return await self._create(now)
        except Exception as e:
            logger.error(f"failed to read lease {self.namespace}/{name}: {e}")
            return False

        spec = lease.spec or client.V1LeaseSpec()
        self._observe(spec)
        holder = spec.holder_identity or ""

        if holder and holder != self.identity:
            duration = spec.lease_duration_seconds or self.config.lease_duration
            if self._observed_time + duration > time.monotonic():
                return False

        if holder == self.identity:
            spec.renew_time = now
            spec.lease_duration_seconds = self.config.lease_duration
        else:
            spec = self._new_spec(now, (spec.lease_transitions or 0) + 1)
        lease.spec = spec

        try:
            await asyncio.to_thread(
                self.api.replace_namespaced_lease, name, self.namespace, lease
            )
        except ApiException as e:
            if e.status != 409:
                logger.error(f"failed to update lease {self.namespace}/{name}: {e.reason}")
            return False
        except Exception as e:
            logger.error(f"failed to update lease {self.namespace}/{name}: {e}")
            return False

        self._observe(spec)
        return True

    async def _create(self, now: datetime) -> bool:
        name = self.config.lease_name
        lease = client.V1Lease(
            metadata=client.V1ObjectMeta(name=name, namespace=self.namespace),
            spec=self._new_spec(now, 0),
        )
        try:
            await asyncio.to_thread(
                self.api.create_namespaced_lease, self.namespace, lease
            )
        except ApiException as e:
            if e.status != 409:
                logger.error(f"failed to create lease {self.namespace}/{name}: {e.reason}")
            return False
        except Exception as e:
            logger.error(f"failed to create lease {self.namespace}/{name}: {e}")
            return False

        self._observe(lease.spec)
        return True

    async def release(self) -> None:
        """Give the lease up so another replica can take over immediately."""
        name = self.config.lease_name
        try:
            lease = await asyncio.to_thread(
                self.api.read_namespaced_lease, name, self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            lease.spec.lease_duration_seconds = 1
            lease.spec.renew_time = datetime.now(timezone.utc)
            await asyncio.to_thread(
                self.api.replace_namespaced_lease, name, self.namespace, lease
            )
            logger.info(f"released leader lease {self.namespace}/{name}")
        except Exception as e:
            logger.error(f"failed to release lease {self.namespace}/{name}: {e}")
