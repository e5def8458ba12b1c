"""Claude CLI credential check.

Reads the OAuth block the CLI writes after ``claude login`` and reports
whether it is present and unexpired. Never raises: every failure is
turned into an unauthenticated status with a diagnostic message.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ccbridge.engine.errors import AuthUnavailableError

logger = logging.getLogger(__name__)

LOGIN_HINT = "Claude CLI not logged in. Run: npx @anthropic-ai/claude-code login"


@dataclass
class AuthStatus:
    authenticated: bool
    error: str | None = None
    subscription_type: str | None = None
    expires_at: Any = None

    def to_dict(self) -> dict[str, Any]:
        if not self.authenticated:
            return {"authenticated": False, "error": self.error}
        return {
            "authenticated": True,
            "subscriptionType": self.subscription_type,
            "expiresAt": self.expires_at,
        }


def _parse_expiry(value: Any) -> datetime:
    """Accept epoch milliseconds, epoch seconds, or an ISO-8601 string."""
    if isinstance(value, bool):
        raise AuthUnavailableError(f"Invalid expiresAt value: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise AuthUnavailableError(f"Invalid expiresAt value: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise AuthUnavailableError(f"Invalid expiresAt value: {value!r}")


def _load_oauth(path: Path) -> dict[str, Any] | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise AuthUnavailableError(f"Failed to check Claude credentials: {exc}") from exc
    if not isinstance(raw, dict):
        raise AuthUnavailableError(
            "Failed to check Claude credentials: unexpected file format"
        )
    oauth = raw.get("claudeAiOauth")
    return oauth if isinstance(oauth, dict) else None


def check_claude_auth(
    path: str | Path,
    now: datetime | None = None,
) -> AuthStatus:
    path = Path(path).expanduser()
    if not path.exists():
        return AuthStatus(authenticated=False, error=LOGIN_HINT)
    try:
        oauth = _load_oauth(path)
        if oauth is None:
            return AuthStatus(
                authenticated=False, error="No Claude OAuth credentials found"
            )
        expires_at = oauth.get("expiresAt")
        expiry = _parse_expiry(expires_at)
    except AuthUnavailableError as exc:
        logger.warning("Claude credential check failed: %s", exc.reason)
        return AuthStatus(authenticated=False, error=exc.reason)

    now = now or datetime.now(timezone.utc)
    if expiry < now:
        return AuthStatus(
            authenticated=False,
            error=f"Claude credentials expired at: {expires_at}",
        )
    return AuthStatus(
        authenticated=True,
        subscription_type=oauth.get("subscriptionType"),
        expires_at=expires_at,
    )
