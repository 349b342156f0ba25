"""Remote storage tier talking to the storage HTTP API."""
import asyncio
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from levelup import monitoring
from levelup.config import AccountSettings, RemoteSettings
from levelup.models.errors import RemoteStorageUnavailable, StorageError
from levelup.models.storage_models import (
    AccountCode,
    HealthStatus,
    StorageOptions,
    StorageResult,
    UserSession,
)
from levelup.services.storage_provider import StorageProvider

logger = logging.getLogger(__name__)

SESSION_KEY = "levelup_remote_session"
STORAGE_ENDPOINT = "/api/storage"
USERS_ENDPOINT = "/api/users"


class RemoteStorageProvider(StorageProvider):
    """Storage on the backend API, scoped to the active user.

    Every call names its language namespace explicitly; keys that do not
    belong to a language go to the shared namespace.
    """

    name = "remote"

    def __init__(
        self,
        remote_settings: Optional[RemoteSettings] = None,
        account_settings: Optional[AccountSettings] = None,
        session_store: Optional[StorageProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the provider.

        Args:
            remote_settings: API location, timeouts and retry policy.
            account_settings: Account code length and expiry.
            session_store: Tier used to persist the user session between runs.
            client: Preconfigured HTTP client, mainly for tests.
            sleep: Coroutine used for retry backoff.
        """
        self.settings = remote_settings or RemoteSettings()
        self.account_settings = account_settings or AccountSettings()
        self.session_store = session_store
        self.sleep = sleep
        self._client = client
        self.session: Optional[UserSession] = None
        self.online = True
        self._session_lock = asyncio.Lock()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_key:
                headers["Authorization"] = f"Bearer {self.settings.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Get a value from the remote store."""
        result = await self._storage_call("get", key, language_code)
        if result.success and "found" not in result.metadata:
            result.metadata["found"] = result.data is not None
        return result

    async def set(
        self,
        key: str,
        value: Any,
        options: Optional[StorageOptions] = None,
        language_code: Optional[str] = None,
    ) -> StorageResult:
        """Store a value in the remote store."""
        options = options or StorageOptions()
        return await self._storage_call(
            "set", key, language_code, data=value, options=options.to_dict()
        )

    async def delete(self, key: str, language_code: Optional[str] = None) -> StorageResult:
        """Delete a value from the remote store."""
        return await self._storage_call("delete", key, language_code)

    async def get_keys(
        self, pattern: Optional[str] = None, language_code: Optional[str] = None
    ) -> StorageResult[List[str]]:
        """List remote keys, optionally filtered by a regular expression."""
        result = await self._storage_call("list", None, language_code)
        if not result.success:
            return result
        keys = result.data or []
        if pattern:
            regex = re.compile(pattern)
            keys = [key for key in keys if regex.search(key)]
        return StorageResult.ok(list(keys))

    async def health_check(self) -> StorageResult[Dict[str, Any]]:
        """Check that a user session can be obtained from the API."""
        try:
            session = await self.get_user_session()
        except StorageError as e:
            return self.health(HealthStatus.UNHEALTHY, tier=self.name, error=str(e))
        return self.health(
            HealthStatus.HEALTHY if self.online else HealthStatus.DEGRADED,
            tier=self.name,
            user_id=session.user_id,
        )

    async def get_user_session(self) -> UserSession:
        """Get the active session, restoring or creating it on first use."""
        async with self._session_lock:
            if self.session is not None:
                return self.session
            return await self.initialize_user(await self._load_session())

    async def initialize_user(self, existing: Optional[UserSession] = None) -> UserSession:
        """Authenticate an existing session or create a guest user."""
        if existing is not None:
            body = await self._api_call(
                USERS_ENDPOINT,
                {
                    "action": "authenticate",
                    "userId": existing.user_id,
                    "sessionToken": existing.session_token,
                },
            )
            if body.get("success"):
                self.session = existing
                logger.info("Authenticated remote user %s", existing.user_id)
                return existing
            logger.warning("Stored session for %s was rejected, creating a guest", existing.user_id)

        body = await self._api_call(USERS_ENDPOINT, {"action": "create"})
        if not body.get("success") or not body.get("data"):
            raise StorageError(body.get("error") or "Could not create remote user")

        session = UserSession.from_dict(
            {"createdAt": datetime.now(UTC).isoformat(), **body["data"]}
        )
        await self._store_session(session)
        logger.info("Created remote guest user %s", session.user_id)
        return session

    async def generate_account_code(self) -> StorageResult[AccountCode]:
        """Ask the API for a code that links another device to this account."""
        try:
            session = await self.get_user_session()
            body = await self._api_call(
                USERS_ENDPOINT,
                {
                    "action": "generateCode",
                    "userId": session.user_id,
                    "sessionToken": session.session_token,
                    "expiresIn": self.account_settings.code_expiry_seconds,
                },
            )
        except StorageError as e:
            logger.error("Failed to generate account code: %s", e)
            return StorageResult.fail(str(e))

        data = body.get("data") or {}
        if not body.get("success") or not data.get("code"):
            return StorageResult.fail(body.get("error") or "Failed to generate account code")

        expires_at = (
            datetime.fromisoformat(data["expiresAt"].replace("Z", "+00:00"))
            if data.get("expiresAt")
            else datetime.now(UTC) + timedelta(seconds=self.account_settings.code_expiry_seconds)
        )
        return StorageResult.ok(AccountCode(code=data["code"], expires_at=expires_at))

    async def link_device_with_code(self, code: str) -> StorageResult[UserSession]:
        """Replace this device's session with the account owning the code."""
        normalized = code.strip().upper()
        length = self.account_settings.code_length
        if not re.fullmatch(rf"[A-Z0-9]{{{length}}}", normalized):
            return StorageResult.fail("Invalid account code format")

        try:
            payload: Dict[str, Any] = {"action": "linkDevice", "code": normalized}
            if self.session is not None:
                payload["userId"] = self.session.user_id
            body = await self._api_call(USERS_ENDPOINT, payload)
        except StorageError as e:
            logger.error("Failed to link device: %s", e)
            return StorageResult.fail(str(e))

        if not body.get("success") or not body.get("data"):
            return StorageResult.fail(body.get("error") or "Invalid or expired account code")

        session = UserSession.from_dict({"isGuest": False, **body["data"]})
        await self._store_session(session)
        logger.info("Linked device to remote user %s", session.user_id)
        return StorageResult.ok(session)

    async def _storage_call(
        self,
        action: str,
        key: Optional[str],
        language_code: Optional[str],
        data: Any = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> StorageResult:
        try:
            session = await self.get_user_session()
            payload: Dict[str, Any] = {
                "action": action,
                "userId": session.user_id,
                "languageCode": language_code or self.settings.shared_namespace,
            }
            if key is not None:
                payload["key"] = key
            if data is not None:
                payload["data"] = data
            if options is not None:
                payload["options"] = options
            body = await self._api_call(STORAGE_ENDPOINT, payload)
        except RemoteStorageUnavailable as e:
            self._count(action, "offline")
            return StorageResult.fail(f"Remote storage unavailable: {e}", offline=True)
        except StorageError as e:
            self._count(action, "failure")
            return StorageResult.fail(str(e))

        result = StorageResult(
            success=bool(body.get("success")),
            data=body.get("data"),
            error=body.get("error"),
            metadata=dict(body.get("metadata") or {}),
        )
        self._count(action, "success" if result.success else "failure")
        return result

    async def _api_call(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the API, retrying with exponential backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.settings.retries + 1):
            try:
                response = await self.client.post(endpoint, json=payload)
                if 400 <= response.status_code < 500:
                    raise StorageError(self._error_message(response))
                response.raise_for_status()
                self.online = True
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    "Remote call %s %s failed (attempt %d/%d): %s",
                    endpoint,
                    payload.get("action"),
                    attempt,
                    self.settings.retries,
                    e,
                )
                if attempt < self.settings.retries:
                    monitoring.remote_retries.labels(action=str(payload.get("action"))).inc()
                    await self.sleep(self.settings.retry_base_delay * 2 ** attempt)

        self.online = False
        logger.error(
            "Remote storage unavailable after %d attempts: %s", self.settings.retries, last_error
        )
        raise RemoteStorageUnavailable(str(last_error))

    async def _load_session(self) -> Optional[UserSession]:
        if self.session_store is None:
            return None
        result = await self.session_store.get(SESSION_KEY)
        if not result.found:
            return None
        try:
            return UserSession.from_dict(result.data)
        except (KeyError, TypeError) as e:
            logger.warning("Ignoring malformed stored session: %s", e)
            return None

    async def _store_session(self, session: UserSession) -> None:
        self.session = session
        if self.session_store is not None:
            result = await self.session_store.set(SESSION_KEY, session.to_dict())
            if not result.success:
                logger.warning("Could not persist remote session: %s", result.error)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            error = None
        return error or f"HTTP {response.status_code}"

    def _count(self, operation: str, outcome: str) -> None:
        monitoring.storage_operations.labels(
            operation=operation, tier=self.name, outcome=outcome
        ).inc()
