"""Business logic services — explicitly wired sync runtime."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from marketsnap.config import Settings

if TYPE_CHECKING:
    from marketsnap.database import Database
    from marketsnap.models.cached_session import CachedSession
    from marketsnap.remote.base import RemoteStore
    from marketsnap.services.auth_cache import AuthCache
    from marketsnap.services.connectivity import ConnectivityMonitor
    from marketsnap.services.credentials import Credentials, CredentialsHolder
    from marketsnap.services.queue_store import QueueStore
    from marketsnap.services.scheduler import SyncScheduler
    from marketsnap.services.sync_coordinator import SyncCoordinator
    from marketsnap.services.upload_worker import UploadWorker

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns one instance of every component; handed to consumers explicitly."""

    def __init__(
        self,
        settings: Settings,
        *,
        database: Database,
        store: QueueStore,
        auth_cache: AuthCache,
        connectivity: ConnectivityMonitor,
        credentials: CredentialsHolder,
        remote: RemoteStore | None,
        worker: UploadWorker,
        coordinator: SyncCoordinator,
        scheduler: SyncScheduler,
    ):
        self.settings = settings
        self.database = database
        self.store = store
        self.auth_cache = auth_cache
        self.connectivity = connectivity
        self.credentials = credentials
        self.remote = remote
        self.worker = worker
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.session: CachedSession | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        remote: RemoteStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> "SyncRuntime":
        """Create and wire up all components from settings."""
        from marketsnap.database import Database
        from marketsnap.remote.firebase import FirebaseRemoteStore
        from marketsnap.services.auth_cache import AuthCache
        from marketsnap.services.connectivity import ConnectivityMonitor
        from marketsnap.services.credentials import CredentialsHolder
        from marketsnap.services.queue_store import QueueStore
        from marketsnap.services.retry_policy import RetryPolicy
        from marketsnap.services.scheduler import SyncScheduler
        from marketsnap.services.sync_coordinator import SyncCoordinator
        from marketsnap.services.upload_worker import UploadWorker
        from marketsnap.utils.crypto import RecordCipher, load_or_create_key

        cipher = RecordCipher(load_or_create_key(settings.key_path, settings.encryption_key))
        policy = RetryPolicy.from_settings(settings)
        database = Database(settings.database_path, echo=settings.debug and settings.log_level == "DEBUG")

        store = QueueStore(
            database,
            cipher,
            settings.quarantine_dir,
            policy=policy,
            min_free_bytes=settings.min_free_bytes,
        )
        auth_cache = AuthCache(database, cipher, ttl_days=settings.session_ttl_days)

        if remote is None:
            if not settings.remote_configured:
                logger.warning(
                    "Firebase not configured (MARKETSNAP_FIREBASE_PROJECT_ID / "
                    "MARKETSNAP_FIREBASE_STORAGE_BUCKET) — uploads will fail and be retried"
                )
            remote = FirebaseRemoteStore(
                settings.firebase_project_id,
                settings.firebase_storage_bucket,
                collection=settings.snaps_collection,
                storage_api_url=settings.storage_api_url,
                firestore_api_url=settings.firestore_api_url,
                timeout=settings.upload_timeout_seconds,
            )

        if connectivity is None:
            connectivity = ConnectivityMonitor(
                settings.connectivity_probe_url,
                stability_seconds=settings.connectivity_stability_seconds,
                poll_interval=settings.connectivity_poll_seconds,
                fast_poll_interval=settings.connectivity_fast_poll_seconds,
                probe_timeout=settings.connectivity_probe_timeout_seconds,
            )

        credentials = CredentialsHolder()
        worker = UploadWorker(remote, timeout=settings.upload_timeout_seconds)
        coordinator = SyncCoordinator(store, worker, connectivity, credentials.get, policy)
        scheduler = SyncScheduler(
            coordinator,
            connectivity,
            state_dir=settings.state_dir,
            interval_minutes=settings.sync_interval_minutes,
        )
        return cls(
            settings,
            database=database,
            store=store,
            auth_cache=auth_cache,
            connectivity=connectivity,
            credentials=credentials,
            remote=remote,
            worker=worker,
            coordinator=coordinator,
            scheduler=scheduler,
        )

    async def start(self, *, background: bool = True) -> None:
        """Open the store (crash recovery), restore the session, start triggers."""
        recovered = await self.store.open()
        if recovered:
            logger.warning("%d interrupted upload(s) will be retried", recovered)
        if self.store.recovered_from_corruption:
            logger.warning("Queue store was rebuilt — some queued items were lost")

        self.session = await self.auth_cache.load()
        if self.session:
            logger.info("Restored cached session for %s", self.session.user_id)

        if background:
            self.connectivity.start()
            self.scheduler.start()
            from marketsnap.services.sync_coordinator import SyncTrigger

            self.scheduler.trigger(SyncTrigger.STARTUP)
        logger.info("Sync runtime started")

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.connectivity.stop()
        aclose = getattr(self.remote, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.store.close()
        logger.info("Sync runtime stopped")

    async def sign_in(
        self,
        credentials: Credentials,
        display_name: str | None = None,
        avatar_ref: str | None = None,
    ) -> CachedSession:
        """New credentials lift any auth pause; the session is cached for offline start."""
        self.credentials.set(credentials)
        self.session = await self.auth_cache.save(credentials.user_id, display_name, avatar_ref)
        self.coordinator.resume()
        return self.session

    async def sign_out(self, *, purge_queue: bool = False) -> int:
        """Clear credentials and the cached session; optionally drop the user's queue."""
        purged = 0
        current = self.credentials.get()
        owner_id = current.user_id if current else (self.session.user_id if self.session else None)
        if purge_queue and owner_id:
            purged = await self.store.purge_owner(owner_id)
        self.credentials.clear()
        await self.auth_cache.clear()
        self.session = None
        return purged
