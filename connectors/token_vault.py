"""
TokenVault — encrypted, expiry-aware storage of bearer / refresh tokens.

This is the single interface the rest of the system uses to persist
credentials.  Structure imposed on the underlying ``SecureStore``:

  • ``auth_token``          primary secret  {token, expires_at, refresh_token?}
  • ``connection_tokens``   per-connector map  {connector_id: {token, expires_at}}
  • ``token_salt``          salt record  {current: <id>, salts: {<id>: <salt>}}

Every secret blob is ``"<salt_id>.<fernet ciphertext>"`` so it always names
the salt that encrypted it.  Plaintext tokens never reach the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from config.settings import Settings
from connectors.encryption import TokenCipher, new_salt, salt_id
from connectors.errors import CorruptionError, ExpiryExhausted, StorageError
from connectors.storage import SecureStore

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = "auth_token"
CONNECTION_TOKENS_KEY = "connection_tokens"
TOKEN_SALT_KEY = "token_salt"

DEFAULT_TTL_SECONDS = 3600

# (refresh_token) -> {"access_token": ..., "expires_in": ..., "refresh_token": ... (optional)}
TokenRefresher = Callable[[str], Awaitable[Dict[str, Any]]]


class TokenVault:
    """Encrypted token storage with single-flight refresh."""

    def __init__(
        self,
        store: SecureStore,
        settings: Settings,
        refresher: Optional[TokenRefresher] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings.require("token_encryption_key")
        self._store = store
        self._secret = settings.token_encryption_key
        self._iterations = settings.token_kdf_iterations
        self._refresh_timeout = settings.provider_timeout_seconds
        self._refresher = refresher
        self._clock = clock

        self._ciphers: Dict[str, TokenCipher] = {}
        self._write_lock = asyncio.Lock()
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def busy(self) -> bool:
        """True while a write or a refresh is in progress."""
        return self._write_lock.locked() or bool(self._inflight)

    # ── Primary token ───────────────────────────────────────────────────

    async def store(
        self,
        token: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        refresh_token: Optional[str] = None,
    ) -> None:
        """
        Encrypt and persist the primary token.

        Raises
        ------
        ValueError    – token is empty or not a string, or ttl_seconds <= 0
        StorageError  – the secure store is unavailable / the write failed
        """
        _check_token(token)
        _check_ttl(ttl_seconds)
        async with self._write_lock:
            await self._write_auth_token(token, ttl_seconds, refresh_token)
        logger.info("Stored auth token (expires in %ds, refreshable=%s)", ttl_seconds, bool(refresh_token))

    async def retrieve(self) -> Optional[str]:
        """
        Return the primary token, refreshing it once if it has expired.

        Never returns an expired token.  A corrupted blob is a cache miss.
        When the token is expired and cannot be refreshed, the secret is
        purged and None is returned.
        """
        try:
            secret = await self._read_payload(AUTH_TOKEN_KEY)
        except CorruptionError:
            secret = await self._discard_corrupted(AUTH_TOKEN_KEY)
        if secret is None:
            return None
        if self._clock() < secret["expires_at"]:
            return secret["token"]
        return await self._refresh_single_flight(AUTH_TOKEN_KEY, secret)

    async def require_token(self) -> str:
        """Like ``retrieve()`` but raises ``ExpiryExhausted`` instead of returning None."""
        token = await self.retrieve()
        if token is None:
            raise ExpiryExhausted("No valid token; re-authentication required", key=AUTH_TOKEN_KEY)
        return token

    async def get_refresh_token(self) -> Optional[str]:
        try:
            secret = await self._read_payload(AUTH_TOKEN_KEY)
        except CorruptionError:
            return None
        return secret.get("refresh_token") if secret else None

    async def is_token_expired(self) -> bool:
        try:
            secret = await self._read_payload(AUTH_TOKEN_KEY)
        except CorruptionError:
            return True
        return secret is None or self._clock() >= secret["expires_at"]

    async def remove(self) -> None:
        """Delete the primary token and its refresh token.  Idempotent."""
        async with self._write_lock:
            await self._store_delete(AUTH_TOKEN_KEY)
        logger.info("Removed auth token")

    # ── Per-connector tokens ────────────────────────────────────────────

    async def store_connection_token(
        self,
        connector_id: str,
        token: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        _check_token(token)
        _check_ttl(ttl_seconds)
        async with self._write_lock:
            tokens = await self._read_connection_tokens()
            tokens[connector_id] = {
                "token": token,
                "expires_at": self._clock() + ttl_seconds,
            }
            await self._write_connection_tokens(tokens)
        logger.info("Stored connection token for %s", connector_id)

    async def get_connection_tokens(self) -> Dict[str, Dict[str, Any]]:
        """Return all unexpired connection tokens, persisting the removal of expired ones."""
        async with self._write_lock:
            tokens = await self._read_connection_tokens()
            now = self._clock()
            valid = {cid: data for cid, data in tokens.items() if now < data["expires_at"]}
            if len(valid) != len(tokens):
                logger.info("Dropping %d expired connection token(s)", len(tokens) - len(valid))
                await self._write_connection_tokens(valid)
        return valid

    async def get_connection_token(self, connector_id: str) -> Optional[str]:
        data = (await self.get_connection_tokens()).get(connector_id)
        if not data or self._clock() >= data["expires_at"]:
            return None
        return data["token"]

    async def remove_connection_token(self, connector_id: str) -> None:
        """Remove one connector's token; other connectors are untouched.  Idempotent."""
        async with self._write_lock:
            tokens = await self._read_connection_tokens()
            if tokens.pop(connector_id, None) is not None:
                await self._write_connection_tokens(tokens)
                logger.info("Removed connection token for %s", connector_id)

    async def remove_all_connection_tokens(self) -> None:
        async with self._write_lock:
            await self._store_delete(CONNECTION_TOKENS_KEY)

    # ── Maintenance ─────────────────────────────────────────────────────

    async def clear_all(self) -> None:
        """Remove every token and the encryption salt (logout)."""
        async with self._write_lock:
            for key in (AUTH_TOKEN_KEY, CONNECTION_TOKENS_KEY, TOKEN_SALT_KEY):
                await self._store_delete(key)
            self._ciphers.clear()
        logger.info("Cleared all stored tokens")

    async def get_token_info(self) -> Dict[str, Any]:
        has_auth_token = (await self._store_get(AUTH_TOKEN_KEY)) is not None
        return {
            "has_auth_token": has_auth_token,
            "auth_token_expired": await self.is_token_expired(),
            "connection_tokens_count": len(await self.get_connection_tokens()),
        }

    async def validate_integrity(self) -> bool:
        """
        Check that every stored secret decrypts and has the expected shape.

        Read-only: no refresh, no purge.  Never raises.
        """
        try:
            secret = await self._read_payload(AUTH_TOKEN_KEY)
            if secret is not None:
                _check_secret_shape(secret, AUTH_TOKEN_KEY)
            tokens = await self._read_payload(CONNECTION_TOKENS_KEY)
            if tokens is not None:
                for cid, data in tokens.items():
                    _check_secret_shape(data, f"{CONNECTION_TOKENS_KEY}[{cid}]")
            return True
        except Exception as exc:
            logger.warning("Token integrity check failed: %s", exc.__class__.__name__)
            return False

    async def rotate_salt(self) -> None:
        """
        Re-encrypt every stored secret under a fresh salt.

        1. persist the new salt next to the old one
        2. re-encrypt each blob under the new salt
        3. make the new salt current and drop the old ones

        Both salts stay readable until step 3 succeeds, so a failure at any
        point leaves every secret decryptable.  Failures raise ``StorageError``.
        """
        async with self._write_lock:
            record = await self._load_salt_record()
            if record is None:
                await self._create_salt_record()
                logger.info("No salt to rotate; created a fresh one")
                return

            salt = new_salt()
            sid = salt_id(salt)
            staged = {"current": record["current"], "salts": {**record["salts"], sid: salt}}
            await self._store_set(TOKEN_SALT_KEY, json.dumps(staged))
            cipher = self._cipher(sid, salt)

            for key in (AUTH_TOKEN_KEY, CONNECTION_TOKENS_KEY):
                blob = await self._store_get(key)
                if blob is None:
                    continue
                try:
                    plaintext = await self._decrypt_blob(key, blob)
                except CorruptionError:
                    logger.warning("Dropping unreadable blob %s during salt rotation", key)
                    await self._store_delete(key)
                    continue
                await self._store_set(key, _encode(cipher, plaintext))

            await self._store_set(TOKEN_SALT_KEY, json.dumps({"current": sid, "salts": {sid: salt}}))
        logger.info("Rotated token encryption salt")

    # ── Refresh (single-flight) ─────────────────────────────────────────

    async def _refresh_single_flight(self, key: str, stale: Dict[str, Any]) -> Optional[str]:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._refresh(key, stale))
            self._inflight[key] = future

            def _done(f: asyncio.Future, key: str = key) -> None:
                if self._inflight.get(key) is f:
                    del self._inflight[key]

            future.add_done_callback(_done)
        # shield: one caller going away must not cancel the refresh the others wait on
        return await asyncio.shield(future)

    async def _refresh(self, key: str, stale: Dict[str, Any]) -> Optional[str]:
        # The write lock is held only around store access, never across the
        # refresher call; writes that land meanwhile win over the refresh.
        async with self._write_lock:
            current = await self._read_or_none(key)
            if current is None:
                return None
            if self._clock() < current["expires_at"]:
                # someone refreshed between our read and taking the lock
                return current["token"]

            refresh_token = current.get("refresh_token") or stale.get("refresh_token")
            if not refresh_token or self._refresher is None:
                logger.info("Token %s expired with no way to refresh; purging", key)
                await self._store_delete(key)
                return None

        try:
            refreshed = await asyncio.wait_for(
                self._refresher(refresh_token), timeout=self._refresh_timeout
            )
            token = refreshed["access_token"]
            _check_token(token)
            ttl_seconds = _refreshed_ttl(refreshed.get("expires_in"))
        except Exception as exc:
            logger.warning("Token refresh failed for %s: %s", key, exc)
            async with self._write_lock:
                latest = await self._read_or_none(key)
                if latest == current:
                    await self._store_delete(key)
                    return None
            return _live_token(latest, self._clock())

        async with self._write_lock:
            latest = await self._read_or_none(key)
            if latest != current:
                logger.info("Token %s was replaced during refresh; keeping the newer one", key)
                return _live_token(latest, self._clock())
            await self._write_auth_token(
                token,
                ttl_seconds,
                refreshed.get("refresh_token") or refresh_token,
            )
        logger.info("Refreshed token %s", key)
        return token

    # ── Internals: payloads ─────────────────────────────────────────────

    async def _write_auth_token(self, token: str, ttl_seconds: int, refresh_token: Optional[str]) -> None:
        payload: Dict[str, Any] = {"token": token, "expires_at": self._clock() + ttl_seconds}
        if refresh_token:
            payload["refresh_token"] = refresh_token
        cipher = await self._current_cipher()
        await self._store_set(AUTH_TOKEN_KEY, _encode(cipher, json.dumps(payload)))

    async def _read_connection_tokens(self) -> Dict[str, Dict[str, Any]]:
        try:
            tokens = await self._read_payload(CONNECTION_TOKENS_KEY)
        except CorruptionError:
            await self._store_delete(CONNECTION_TOKENS_KEY)
            logger.warning("Connection token map was unreadable; treated as empty")
            return {}
        valid: Dict[str, Dict[str, Any]] = {}
        for cid, data in (tokens or {}).items():
            try:
                valid[cid] = _check_secret_shape(data, cid)
            except CorruptionError:
                logger.warning("Dropping malformed connection token entry for %s", cid)
        return valid

    async def _write_connection_tokens(self, tokens: Dict[str, Dict[str, Any]]) -> None:
        if not tokens:
            await self._store_delete(CONNECTION_TOKENS_KEY)
            return
        cipher = await self._current_cipher()
        await self._store_set(CONNECTION_TOKENS_KEY, _encode(cipher, json.dumps(tokens)))

    async def _read_payload(self, key: str) -> Optional[Dict[str, Any]]:
        blob = await self._store_get(key)
        if blob is None:
            return None
        plaintext = await self._decrypt_blob(key, blob)
        try:
            payload = json.loads(plaintext)
        except ValueError as exc:
            raise CorruptionError("Stored secret is not valid JSON", key=key, original_error=exc) from exc
        if not isinstance(payload, dict):
            raise CorruptionError("Stored secret has an unexpected shape", key=key)
        if key == AUTH_TOKEN_KEY:
            _check_secret_shape(payload, key)
        return payload

    async def _read_or_none(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._read_payload(key)
        except CorruptionError:
            return None

    async def _discard_corrupted(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Delete *key* if it is still unreadable once the write lock is held.

        A write that landed after the failed read is kept and its payload
        returned.
        """
        async with self._write_lock:
            try:
                return await self._read_payload(key)
            except CorruptionError:
                logger.warning("Secret %s is corrupted; treating as a cache miss", key)
                await self._store_delete(key)
                return None

    # ── Internals: salts & ciphers ──────────────────────────────────────

    def _cipher(self, sid: str, salt: str) -> TokenCipher:
        cipher = self._ciphers.get(sid)
        if cipher is None:
            cipher = TokenCipher(self._secret, salt, iterations=self._iterations)
            self._ciphers[sid] = cipher
        return cipher

    async def _decrypt_blob(self, key: str, blob: str) -> str:
        sid, sep, ciphertext = blob.partition(".")
        if not sep or not ciphertext:
            raise CorruptionError("Stored secret is malformed", key=key)
        cipher = self._ciphers.get(sid)
        if cipher is None:
            record = await self._load_salt_record()
            salt = record["salts"].get(sid) if record else None
            if not salt:
                raise CorruptionError("Stored secret references an unknown salt", key=key)
            cipher = self._cipher(sid, salt)
        try:
            return cipher.decrypt(ciphertext)
        except CorruptionError as exc:
            raise CorruptionError(exc.message, key=key, original_error=exc.original_error) from exc

    async def _load_salt_record(self) -> Optional[Dict[str, Any]]:
        raw = await self._store_get(TOKEN_SALT_KEY)
        if raw is None:
            return None
        try:
            record = json.loads(raw)
            if record["current"] not in record["salts"]:
                raise KeyError(record["current"])
            return record
        except (ValueError, KeyError, TypeError):
            logger.warning("Salt record is unreadable; secrets encrypted under it are lost")
            return None

    async def _create_salt_record(self) -> TokenCipher:
        salt = new_salt()
        sid = salt_id(salt)
        await self._store_set(TOKEN_SALT_KEY, json.dumps({"current": sid, "salts": {sid: salt}}))
        return self._cipher(sid, salt)

    async def _current_cipher(self) -> TokenCipher:
        """Cipher for the current salt, creating the salt on first use.  Caller holds the write lock."""
        record = await self._load_salt_record()
        if record is None:
            return await self._create_salt_record()
        sid = record["current"]
        return self._cipher(sid, record["salts"][sid])

    # ── Internals: store access ─────────────────────────────────────────

    async def _store_get(self, key: str) -> Optional[str]:
        try:
            return await self._store.get(key)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError("Secure storage read failed", key=key, original_error=exc) from exc

    async def _store_set(self, key: str, value: str) -> None:
        try:
            await self._store.set(key, value)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError("Secure storage write failed", key=key, original_error=exc) from exc

    async def _store_delete(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError("Secure storage delete failed", key=key, original_error=exc) from exc


def _encode(cipher: TokenCipher, plaintext: str) -> str:
    return f"{cipher.salt_id}.{cipher.encrypt(plaintext)}"


def _check_token(token: Any) -> None:
    if not isinstance(token, str) or not token:
        raise ValueError("token must be a non-empty string")


def _check_ttl(ttl_seconds: Any) -> None:
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, (int, float)) or ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be a positive number")


def _refreshed_ttl(expires_in: Any) -> int:
    """Lifetime of a refreshed token; missing means the default, <= 0 means already expired."""
    if expires_in is None:
        return DEFAULT_TTL_SECONDS
    ttl_seconds = int(float(expires_in))
    if ttl_seconds <= 0:
        raise ValueError(f"refreshed token is already expired (expires_in={expires_in!r})")
    return ttl_seconds


def _live_token(payload: Optional[Dict[str, Any]], now: float) -> Optional[str]:
    if payload is None or now >= payload["expires_at"]:
        return None
    return payload["token"]


def _check_secret_shape(data: Any, key: str) -> Dict[str, Any]:
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("token"), str)
        or not data["token"]
        or not isinstance(data.get("expires_at"), (int, float))
    ):
        raise CorruptionError("Stored secret has an unexpected shape", key=key)
    return data
