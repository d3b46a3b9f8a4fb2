from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from redis import Redis

from warden.logging import email_digest, get_logger
from warden.storage.models import LoginAttempt

logger = get_logger(__name__)


class RedisAttemptLedger:
    """Login-attempt ledger kept in Redis sorted sets.

    Every attempt is written to two sets, one keyed by the email digest and one
    by origin address, scored by its timestamp. Both sets hold the same member
    string so a cleared attempt can be removed from each. Keys expire after
    ``retention_days`` of inactivity.
    """

    KEY_PREFIX = "auth:attempts"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = 5.0,
        retention_days: int = 30,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.retention_seconds = retention_days * 86400

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def _email_key(self, scope: str, email: str) -> str:
        return f"{self.KEY_PREFIX}:{scope}:email:{email_digest(email)}"

    def _origin_key(self, scope: str, ip_address: str) -> str:
        return f"{self.KEY_PREFIX}:{scope}:ip:{ip_address}"

    @staticmethod
    def _encode(attempt: LoginAttempt) -> str:
        return json.dumps(
            {
                "id": attempt.id,
                "email": attempt.email,
                "ip": attempt.ip_address,
                "ok": attempt.success,
                "ts": attempt.attempted_at.timestamp(),
                "ua": attempt.user_agent,
                "scope": attempt.scope,
            },
            sort_keys=True,
        )

    @staticmethod
    def _decode(member: str) -> Optional[LoginAttempt]:
        try:
            data = json.loads(member)
            return LoginAttempt(
                id=data["id"],
                email=data["email"],
                ip_address=data.get("ip"),
                success=bool(data["ok"]),
                attempted_at=datetime.fromtimestamp(float(data["ts"]), tz=timezone.utc),
                user_agent=data.get("ua"),
                scope=data.get("scope", "login"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("login_attempt_decode_failed", error=str(exc))
            return None

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        member = self._encode(attempt)
        score = attempt.attempted_at.timestamp()
        keys = [self._email_key(attempt.scope, attempt.email)]
        if attempt.ip_address:
            keys.append(self._origin_key(attempt.scope, attempt.ip_address))
        pipe = self.client.pipeline()
        for key in keys:
            pipe.zadd(key, {member: score})
            pipe.expire(key, self.retention_seconds)
        pipe.execute()
        return attempt

    def list_login_attempts(
        self,
        *,
        scope: str = "login",
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
    ) -> List[LoginAttempt]:
        if email is not None:
            keys: Iterable[str] = [self._email_key(scope, email)]
        elif ip_address is not None:
            keys = [self._origin_key(scope, ip_address)]
        else:
            keys = self.client.scan_iter(match=f"{self.KEY_PREFIX}:{scope}:email:*")
        low = since.timestamp() if since is not None else "-inf"
        found: List[LoginAttempt] = []
        for key in keys:
            for member in self.client.zrangebyscore(key, low, "+inf"):
                attempt = self._decode(member)
                if attempt is None:
                    continue
                if email is not None and attempt.email != email:
                    continue
                if ip_address is not None and attempt.ip_address != ip_address:
                    continue
                if success is not None and attempt.success != success:
                    continue
                found.append(attempt)
        return sorted(found, key=lambda a: a.attempted_at)

    def clear_login_attempts(
        self, email: str, ip_address: Optional[str] = None, *, scope: str = "login"
    ) -> int:
        email_key = self._email_key(scope, email)
        removed = 0
        for member in self.client.zrangebyscore(email_key, "-inf", "+inf"):
            attempt = self._decode(member)
            if attempt is None or attempt.success:
                continue
            if ip_address is not None and attempt.ip_address != ip_address:
                continue
            self.client.zrem(email_key, member)
            if attempt.ip_address:
                self.client.zrem(self._origin_key(scope, attempt.ip_address), member)
            removed += 1
        return removed

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        removed = 0
        for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}:*"):
            count = self.client.zremrangebyscore(key, "-inf", f"({cutoff.timestamp()}")
            # Origin sets mirror the email sets; count each attempt once
            if ":email:" in key:
                removed += count
        return removed


__all__ = ["RedisAttemptLedger"]
