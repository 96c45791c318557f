"""
ReelForge Token Authentication
==============================

Bearer tokens for the HTTP trigger surface and the operations websocket.
Each token belongs to one user; the user id it resolves to decides whose
jobs are enqueued and which websocket connections receive events.

Token format: ``rf_<secrets.token_urlsafe(32)>``
Tokens are stored hashed (SHA-256) in ``data/auth/tokens.json``.

Usage as FastAPI dependencies::

    from reelforge.auth import require_user

    @app.post("/api/operations/topic")
    async def trigger(user_id: str = Depends(require_user)):
        ...

CLI usage::

    python -m reelforge token generate --user u1 --name laptop
    python -m reelforge token list
    python -m reelforge token revoke --name laptop
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from fastapi import HTTPException, Request

from reelforge.utils import _now_iso, _now_utc, _parse_iso, _save_json

logger = logging.getLogger("reelforge.auth")

TOKEN_PREFIX = "rf_"
DEV_USER_ID = "dev-user"


@dataclass
class TokenInfo:
    """Metadata for one API token (never the raw value)."""

    name: str
    user_id: str
    token_hash: str
    created_at: str
    expires_at: Optional[str] = None
    last_used: Optional[str] = None

    def is_expired(self) -> bool:
        exp = _parse_iso(self.expires_at)
        return exp is not None and _now_utc() >= exp


class TokenAuth:
    """File-backed token store."""

    def __init__(self, tokens_file: Path) -> None:
        self._tokens_path = Path(tokens_file)
        self._tokens: Dict[str, TokenInfo] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self._tokens_path.exists():
            return
        try:
            raw = json.loads(self._tokens_path.read_text(encoding="utf-8"))
            known = set(TokenInfo.__dataclass_fields__)
            for entry in raw:
                info = TokenInfo(**{k: v for k, v in entry.items() if k in known})
                self._tokens[info.token_hash] = info
            logger.info("Loaded %d token(s) from %s", len(self._tokens), self._tokens_path)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load tokens file %s: %s", self._tokens_path, exc)

    def _save(self) -> None:
        _save_json(self._tokens_path, [asdict(t) for t in self._tokens.values()])

    @staticmethod
    def _hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    # -- public API ---------------------------------------------------------

    def generate_token(self, user_id: str, name: str = "default", expires_days: Optional[int] = None) -> str:
        """Create a token for *user_id*; returns the raw value, shown once."""
        if not user_id:
            raise ValueError("user_id is required")
        raw_token = TOKEN_PREFIX + secrets.token_urlsafe(32)
        token_hash = self._hash(raw_token)
        now = _now_utc()
        info = TokenInfo(
            name=name,
            user_id=user_id,
            token_hash=token_hash,
            created_at=now.isoformat(),
            expires_at=(now + timedelta(days=expires_days)).isoformat() if expires_days else None,
        )
        with self._lock:
            self._tokens[token_hash] = info
            self._save()
        logger.info("Generated token '%s' for %s (hash=%s…)", name, user_id, token_hash[:12])
        return raw_token

    def validate_token(self, token: Optional[str]) -> Optional[TokenInfo]:
        if not token:
            return None
        token_hash = self._hash(token)
        with self._lock:
            info = self._tokens.get(token_hash)
        if info is None or not secrets.compare_digest(info.token_hash, token_hash):
            return None
        if info.is_expired():
            logger.info("Token '%s' has expired", info.name)
            return None
        info.last_used = _now_iso()
        return info

    def verify(self, token: Optional[str]) -> Optional[str]:
        """User id for *token*, or None."""
        info = self.validate_token(token)
        return info.user_id if info else None

    def revoke_token(self, token: Optional[str] = None, name: Optional[str] = None) -> int:
        """Revoke by raw value or by name; returns how many were removed."""
        with self._lock:
            doomed = set()
            if token:
                h = self._hash(token)
                if h in self._tokens:
                    doomed.add(h)
            if name:
                doomed.update(h for h, t in self._tokens.items() if t.name == name)
            for h in doomed:
                del self._tokens[h]
            if doomed:
                self._save()
        if doomed:
            logger.info("Revoked %d token(s)", len(doomed))
        return len(doomed)

    def list_tokens(self) -> List[TokenInfo]:
        """Non-expired tokens with hashes shortened for display."""
        with self._lock:
            infos = list(self._tokens.values())
        return [
            TokenInfo(
                name=t.name, user_id=t.user_id, token_hash=t.token_hash[:12] + "…",
                created_at=t.created_at, expires_at=t.expires_at, last_used=t.last_used,
            )
            for t in infos if not t.is_expired()
        ]


# ---------------------------------------------------------------------------
# FastAPI dependency helpers
# ---------------------------------------------------------------------------

_token_auth: Optional[TokenAuth] = None
_auth_disabled: bool = False


def init_auth(token_auth: Optional[TokenAuth], disabled: bool = False) -> None:
    """Wire the module-level token store; called from the app lifespan."""
    global _token_auth, _auth_disabled  # noqa: PLW0603
    _token_auth = token_auth
    _auth_disabled = disabled
    if disabled:
        logger.warning("Authentication is DISABLED; every request runs as '%s'", DEV_USER_ID)


def verify_token(token: Optional[str]) -> Optional[str]:
    """Token -> user id using the wired store (websocket handshake)."""
    if _auth_disabled:
        return DEV_USER_ID
    if _token_auth is None:
        return None
    return _token_auth.verify(token)


def _extract_bearer(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return request.query_params.get("token")


async def require_user(request: Request) -> str:
    """FastAPI dependency: the authenticated user's id, or HTTP 401."""
    if _auth_disabled:
        return DEV_USER_ID
    raw_token = _extract_bearer(request)
    if not raw_token:
        raise HTTPException(
            status_code=401,
            detail="Missing Authorization header. Use: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if _token_auth is None:
        raise HTTPException(status_code=500, detail="Auth subsystem not initialized")
    user_id = _token_auth.verify(raw_token)
    if user_id is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
