# FILE: session.py  # owned credential state + single-flight refresh

import asyncio  # event loop
import json  # JSON
import os  # paths
from typing import Awaitable, Callable, Dict, List, Optional  # typing

from config import CREDENTIALS_PATH, setup_logger
from errors import SessionExpiredError
from schemas import TokenPair

logger = setup_logger("yolsepeti.session", "SESSION")  # session logger

ACCESS_KEY = "access_token"  # store key
REFRESH_KEY = "refresh_token"  # store key


# -------------------- Stores --------------------

class MemoryCredentialStore:  # process-local store, used by tests
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileCredentialStore:
    """Durable key-value store backed by a small JSON file.

    Every write rewrites the whole file; the file only ever holds the
    access/refresh pair so this stays cheap.
    """

    def __init__(self, path: str = CREDENTIALS_PATH):
        self.path = path

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:  # corrupt file counts as logged out
            logger.error(f"credential store unreadable path={self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp, self.path)  # atomic swap

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            data.pop(key)
            self._save(data)


# -------------------- Session --------------------

Refresher = Callable[[str], Awaitable[TokenPair]]  # refresh_token -> new pair


class Session:
    """Access/refresh credential pair with a single in-flight refresh.

    Any component may read the credentials; only ``set``/``clear`` and the
    refresh routine write them. ``on_expired`` listeners run when the session
    is torn down after an unrecoverable refresh failure (the caller's cue to
    send the operator back to the login surface).
    """

    def __init__(self, store=None):
        self.store = store if store is not None else FileCredentialStore()
        self._inflight: Optional[asyncio.Future] = None  # shared refresh future
        self._expired_listeners: List[Callable[[], None]] = []
        self.refresh_count = 0  # refresh calls actually issued

    @property
    def access_token(self) -> Optional[str]:
        return self.store.get(ACCESS_KEY)

    @property
    def refresh_token(self) -> Optional[str]:
        return self.store.get(REFRESH_KEY)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def set(self, tokens: TokenPair) -> None:  # login / refresh result
        self.store.set(ACCESS_KEY, tokens.access_token)
        self.store.set(REFRESH_KEY, tokens.refresh_token)

    def clear(self) -> None:  # logout / teardown
        self.store.remove(ACCESS_KEY)
        self.store.remove(REFRESH_KEY)

    def on_expired(self, listener: Callable[[], None]) -> None:
        self._expired_listeners.append(listener)

    def expire(self, reason: str) -> None:  # purge credentials and notify listeners
        logger.warning(f"session torn down: {reason}")
        self.clear()
        for listener in list(self._expired_listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"expired listener failed: {e}")

    async def refresh(self, refresher: Refresher, stale_access: Optional[str] = None) -> str:
        """Return a fresh access token, running at most one refresh at a time.

        ``stale_access`` is the token the caller's request was rejected with.
        If the stored token already differs, another caller has refreshed in
        the meantime and that token is returned without a new refresh call.
        """
        current = self.access_token
        if stale_access is not None and current and current != stale_access:
            return current  # already rotated
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_refresh(refresher))
        inflight = self._inflight
        return await asyncio.shield(inflight)

    async def _run_refresh(self, refresher: Refresher) -> str:
        try:
            raw = self.refresh_token
            if not raw:  # nothing to renew with
                self.expire("no refresh credential")
                raise SessionExpiredError("no refresh credential stored")
            self.refresh_count += 1
            try:
                tokens = await refresher(raw)
            except Exception as e:
                self.expire(f"refresh failed: {e}")
                raise SessionExpiredError("credential refresh failed") from e
            self.set(tokens)
            logger.info("access token refreshed")
            return tokens.access_token
        finally:
            self._inflight = None  # next 401 may start a new refresh
