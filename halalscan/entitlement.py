"""Free-tier quota and premium entitlement state.

The local snapshot is an optimistic cache for a responsive UI. The remote
record is authoritative. The hosted classification endpoint counts and
enforces the limit on its own; scans made through a direct model backend
are recorded here.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import httpx

from .models import EntitlementSnapshot, Identity
from .store import SecureStorage, StorageWriteFailed

logger = logging.getLogger(__name__)

FREE_SCANS_LIMIT = 20

PREMIUM_KEY = "isPremium"
SCAN_COUNT_KEY = "scanCount"
IDENTITY_KEY = "identity"


class IdentityProvider(ABC):
    """Supplies the identity token scans are attributed to."""

    @abstractmethod
    async def resolve(self) -> Identity | None:
        """Return the current identity, or None when none can be obtained."""
        ...

    async def renew(self, identity: Identity) -> Identity | None:
        """Replace an identity whose access token was rejected.

        Returns None when the provider cannot issue a new one.
        """
        return None


class EntitlementStore(ABC):
    """Remote per-identity record of scan count and premium flag."""

    @abstractmethod
    async def fetch(self, identity: Identity) -> EntitlementSnapshot | None:
        """Return the authoritative record, or None if the identity has none yet."""
        ...

    @abstractmethod
    async def increment(self, identity: Identity) -> None:
        """Increment the scan count by one."""
        ...


class SupabaseIdentityProvider(IdentityProvider):
    """Anonymous Supabase auth, reusing a persisted session when present.

    Access tokens are short-lived. ``renew()`` trades the stored refresh
    token for a new session and signs in anonymously again when that fails.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        storage: SecureStorage,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._storage = storage
        self._client = client
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._url and self._anon_key)

    async def resolve(self) -> Identity | None:
        cached = self._storage.get_item(IDENTITY_KEY, None)
        if isinstance(cached, dict) and cached.get("user_id"):
            return Identity(
                user_id=cached["user_id"],
                access_token=cached.get("access_token", ""),
                anonymous=cached.get("anonymous", True),
                refresh_token=cached.get("refresh_token", ""),
            )

        if not self.configured:
            logger.info("Supabase is not configured, running without identity")
            return None
        return await self._sign_up()

    async def renew(self, identity: Identity) -> Identity | None:
        if not self.configured:
            return None
        if identity.refresh_token:
            try:
                body = await self._post_auth(
                    "/auth/v1/token",
                    {"refresh_token": identity.refresh_token},
                    params={"grant_type": "refresh_token"},
                )
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Session refresh rejected (%d), signing in again",
                    e.response.status_code,
                )
            else:
                renewed = self._session_from(body)
                if renewed is not None:
                    logger.info("Refreshed session for %s", renewed.user_id)
                    return renewed
        return await self._sign_up()

    async def _sign_up(self) -> Identity | None:
        body = await self._post_auth("/auth/v1/signup", {})
        identity = self._session_from(body)
        if identity is None:
            logger.warning("Anonymous sign-in returned no user id")
        return identity

    async def _post_auth(self, path: str, payload: dict, params: dict | None = None) -> dict:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(
                f"{self._url}{path}",
                headers={"apikey": self._anon_key, "Content-Type": "application/json"},
                params=params,
                json=payload,
            )
            response.raise_for_status()
            return response.json()
        finally:
            if self._client is None:
                await client.aclose()

    def _session_from(self, body: dict) -> Identity | None:
        """Build and persist an identity from a Supabase session response."""
        user = body.get("user") or {}
        if not user.get("id"):
            return None

        identity = Identity(
            user_id=user["id"],
            access_token=body.get("access_token", ""),
            anonymous=True,
            refresh_token=body.get("refresh_token", ""),
        )
        try:
            self._storage.set_item(
                IDENTITY_KEY,
                {
                    "user_id": identity.user_id,
                    "access_token": identity.access_token,
                    "refresh_token": identity.refresh_token,
                    "anonymous": identity.anonymous,
                },
            )
        except StorageWriteFailed as e:
            logger.warning("Could not persist identity: %s", e)
        return identity


class SupabaseEntitlementStore(EntitlementStore):
    """Reads the ``user_stats`` table through Supabase's REST interface."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._client = client
        self._timeout = timeout

    def _headers(self, identity: Identity) -> dict[str, str]:
        token = identity.access_token or self._anon_key
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, identity: Identity, **kwargs) -> httpx.Response:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.request(
                method, f"{self._url}{path}", headers=self._headers(identity), **kwargs
            )
            response.raise_for_status()
            return response
        finally:
            if self._client is None:
                await client.aclose()

    async def fetch(self, identity: Identity) -> EntitlementSnapshot | None:
        response = await self._request(
            "GET",
            "/rest/v1/user_stats",
            identity,
            params={"select": "scan_count,is_premium", "id": f"eq.{identity.user_id}"},
        )
        rows = response.json()
        if not rows:
            return None
        row = rows[0]
        return EntitlementSnapshot(
            scan_count=int(row.get("scan_count") or 0),
            is_premium=bool(row.get("is_premium")),
            identity=identity.user_id,
        )

    async def increment(self, identity: Identity) -> None:
        await self._request(
            "POST",
            "/rest/v1/rpc/increment_scan_count",
            identity,
            json={"row_id": identity.user_id},
        )


class EntitlementState:
    """Answers whether the current identity may scan right now.

    Every update takes a ticket when it is triggered. A result is applied
    only if its ticket is newer than the last applied one, so a slow refresh
    can't overwrite a later local increment.
    """

    def __init__(
        self,
        store: EntitlementStore | None,
        identity_provider: IdentityProvider | None,
        storage: SecureStorage,
        *,
        free_limit: int = FREE_SCANS_LIMIT,
        offline_unmetered: bool = False,
    ) -> None:
        self._store = store
        self._identity_provider = identity_provider
        self._storage = storage
        self._free_limit = free_limit
        self._offline_unmetered = offline_unmetered
        self._snapshot = EntitlementSnapshot()
        self._identity: Identity | None = None
        self._resolved = False
        self._ticket = 0
        self._applied_ticket = 0

    @property
    def snapshot(self) -> EntitlementSnapshot:
        return EntitlementSnapshot(
            scan_count=self._snapshot.scan_count,
            is_premium=self._snapshot.is_premium,
            identity=self._snapshot.identity,
        )

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def is_premium(self) -> bool:
        return self._snapshot.is_premium

    @property
    def scan_count(self) -> int:
        return self._snapshot.scan_count

    @property
    def free_limit(self) -> int:
        return self._free_limit

    @property
    def remaining_free_scans(self) -> int:
        return max(0, self._free_limit - self._snapshot.scan_count)

    def load_cached(self) -> EntitlementSnapshot:
        """Expose the cached premium flag and offline scan count immediately."""
        is_premium = self._storage.get_item(PREMIUM_KEY, False)
        scan_count = self._storage.get_item(SCAN_COUNT_KEY, 0)
        self._snapshot.is_premium = is_premium is True
        self._snapshot.scan_count = scan_count if isinstance(scan_count, int) and scan_count >= 0 else 0
        return self.snapshot

    def bootstrap(self) -> asyncio.Task:
        """Load the cache now and resolve identity + remote record in the background.

        Must be called from a running event loop.
        """
        self.load_cached()
        return asyncio.get_running_loop().create_task(self._resolve_and_refresh())

    async def _resolve_and_refresh(self) -> None:
        identity: Identity | None = None
        if self._identity_provider is not None:
            try:
                identity = await self._identity_provider.resolve()
            except Exception as e:
                logger.warning("Identity resolution failed, using cached entitlement: %s", e)

        self._identity = identity
        self._resolved = True
        if identity is None:
            logger.info("No identity available, using local scan count")
            return
        self._snapshot.identity = identity.user_id
        await self.refresh(identity)

    def can_scan(self) -> bool:
        """Local preflight gate. The remote endpoint remains authoritative."""
        if self._snapshot.is_premium:
            return True
        if self._offline_unmetered and self._resolved and self._identity is None:
            return True
        return self._snapshot.scan_count < self._free_limit

    def _take_ticket(self) -> int:
        self._ticket += 1
        return self._ticket

    def _apply(self, snapshot: EntitlementSnapshot, ticket: int) -> bool:
        if ticket <= self._applied_ticket:
            logger.debug(
                "Discarding stale entitlement update (ticket %d <= %d)",
                ticket,
                self._applied_ticket,
            )
            return False
        self._applied_ticket = ticket
        self._snapshot = snapshot
        self._write_cache()
        return True

    def _write_cache(self) -> None:
        try:
            self._storage.set_item(PREMIUM_KEY, self._snapshot.is_premium)
            self._storage.set_item(SCAN_COUNT_KEY, self._snapshot.scan_count)
        except StorageWriteFailed as e:
            logger.warning("Entitlement cache write failed: %s", e)

    async def _with_renewal(self, call, identity: Identity):
        """Run ``call(identity)``, renewing the identity once if its token is rejected.

        Returns:
            The call's result and the identity it finally ran under.
        """
        try:
            return await call(identity), identity
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 401 or self._identity_provider is None:
                raise
            logger.info("Access token for %s rejected, renewing identity", identity.user_id)
            renewed = await self._identity_provider.renew(identity)
            if renewed is None:
                raise

        self._identity = renewed
        self._snapshot.identity = renewed.user_id
        return await call(renewed), renewed

    async def refresh(self, identity: Identity | None = None) -> bool:
        """Re-fetch the authoritative record.

        On failure the last known values are kept.

        Returns:
            True if the remote record was applied.
        """
        identity = identity or self._identity
        if identity is None or self._store is None:
            return False

        ticket = self._take_ticket()
        try:
            remote, identity = await self._with_renewal(self._store.fetch, identity)
        except Exception as e:
            logger.warning("Entitlement refresh failed, keeping last known state: %s", e)
            return False

        if remote is None:
            # No record yet: the first counted scan creates it.
            remote = EntitlementSnapshot(
                scan_count=0,
                is_premium=self._snapshot.is_premium,
                identity=identity.user_id,
            )
        return self._apply(remote, ticket)

    def record_local_increment(self) -> None:
        """Optimistically count a scan when no remote identity exists."""
        ticket = self._take_ticket()
        self._apply(
            EntitlementSnapshot(
                scan_count=self._snapshot.scan_count + 1,
                is_premium=self._snapshot.is_premium,
                identity=self._snapshot.identity,
            ),
            ticket,
        )

    async def after_successful_scan(self, *, server_counted: bool = True) -> None:
        """Account for one successful scan.

        Args:
            server_counted: Whether the classification service already
                incremented the remote record. When it did not, the scan is
                recorded through the store before the record is re-read.
        """
        identity = self._identity
        if identity is None or self._store is None:
            self.record_local_increment()
            return

        if not server_counted:
            try:
                _, identity = await self._with_renewal(self._store.increment, identity)
            except Exception as e:
                logger.warning("Remote scan count update failed, counting locally: %s", e)
                self.record_local_increment()
                return
        await self.refresh(identity)
