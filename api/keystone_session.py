"""
Keystone session cache for the console API.

A single SessionManager owns the process-wide Session: the project-scoped
token, the service catalog and the token expiry. The Session is a frozen
value, so a login replaces all three fields in one reference swap.

Refreshes are single-flight: the refresh path runs under a lock and callers
re-check the cache after acquiring it, so concurrent requests that all see an
expiring token trigger one Keystone exchange and share its result.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import requests

from errors import AuthenticationError, NotSignedInError
from settings import ConsoleSettings

logger = logging.getLogger("osconsole.session")

DEFAULT_SKEW_SECONDS = 120

Credentials = Tuple[str, str]
CredentialsProvider = Callable[[], Optional[Credentials]]


def mask_value(val: Optional[str]) -> str:
    """Mask a secret for log output."""
    if not val or len(val) < 6:
        return "********"
    return f"{val[:2]}********{val[-2:]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_FRACTION_RE = re.compile(r"\.(\d+)")


def _six_digit_fraction(match: re.Match) -> str:
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_expiry(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a Keystone ``expires_at`` value into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = _FRACTION_RE.sub(_six_digit_fraction, str(value).replace("Z", "+00:00"))
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Unparseable token expiry %r, treating token as expiring", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_expiring_soon(
    expires_at: Union[str, datetime, None],
    skew_seconds: int = DEFAULT_SKEW_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    """True when the credential is absent or expires within ``skew_seconds``."""
    exp = parse_expiry(expires_at)
    if exp is None:
        return True
    now = now or utcnow()
    return (exp - now).total_seconds() < skew_seconds


@dataclass(frozen=True)
class Session:
    token: str
    catalog: List[Dict[str, Any]]
    expires_at: str
    user: Dict[str, Any] = field(default_factory=dict)
    project: Dict[str, Any] = field(default_factory=dict)

    def expiring_soon(self, skew_seconds: int = DEFAULT_SKEW_SECONDS, now: Optional[datetime] = None) -> bool:
        return is_expiring_soon(self.expires_at, skew_seconds, now)

    def endpoint(self, service_type: str, interface: str = "public") -> Optional[str]:
        """Return the catalog URL for ``service_type``, or None."""
        for svc in self.catalog or []:
            if svc.get("type") == service_type:
                for ep in svc.get("endpoints", []):
                    if ep.get("interface") == interface:
                        return ep["url"].rstrip("/")
        return None

    def to_signin_payload(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "catalog": self.catalog,
            "user": self.user,
            "project": self.project,
        }


class SessionManager:
    """Owns the cached Keystone session and its refresh discipline."""

    def __init__(
        self,
        settings: ConsoleSettings,
        http: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.http = http or requests.Session()
        self.http.verify = settings.verify_tls
        self.clock = clock
        self._session: Optional[Session] = None
        self._refresh_lock = threading.Lock()

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def is_signed_in(self) -> bool:
        session = self._session
        return session is not None and not self._needs_refresh(session)

    def _needs_refresh(self, session: Optional[Session]) -> bool:
        if session is None or not session.token or session.catalog is None:
            return True
        return session.expiring_soon(self.settings.token_skew_seconds, self.clock())

    def _configured_credentials(self) -> Optional[Credentials]:
        if not self.settings.has_credentials:
            return None
        return self.settings.username, self.settings.password

    # ---------------------------
    # Public API
    # ---------------------------
    def ensure_valid(self, credentials_provider: Optional[CredentialsProvider] = None) -> Session:
        """
        Return a session whose token is not expiring soon, logging in first
        when the cache is absent or stale.
        """
        session = self._session
        if not self._needs_refresh(session):
            return session  # type: ignore[return-value]

        with self._refresh_lock:
            # Another caller may have refreshed while we waited
            session = self._session
            if not self._needs_refresh(session):
                return session  # type: ignore[return-value]

            provider = credentials_provider or self._configured_credentials
            creds = provider()
            if not creds or not creds[0] or not creds[1]:
                raise NotSignedInError(
                    "Not signed in and no OS_USERNAME/OS_PASSWORD configured; call /signin first"
                )
            try:
                return self._login_locked(*creds)
            except AuthenticationError as e:
                raise NotSignedInError(e.message) from e

    def login(self, username: str, password: str) -> Session:
        """Exchange credentials for a project-scoped token and cache it."""
        if not username or not password:
            raise AuthenticationError("username and password are required")
        with self._refresh_lock:
            return self._login_locked(username, password)

    # ---------------------------
    # Keystone exchange
    # ---------------------------
    def _auth_payload(self, username: str, password: str) -> Dict[str, Any]:
        cfg = self.settings
        return {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": username,
                            "domain": {"name": cfg.user_domain},
                            "password": password,
                        }
                    },
                },
                "scope": {
                    "project": {
                        "name": cfg.project_name,
                        "domain": {"name": cfg.project_domain},
                    }
                },
            }
        }

    def _login_locked(self, username: str, password: str) -> Session:
        url = f"{self.settings.auth_url}/auth/tokens"
        try:
            r = self.http.post(
                url,
                json=self._auth_payload(username, password),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.settings.auth_timeout,
            )
        except requests.RequestException as e:
            logger.error("Keystone unreachable at %s: %s", url, e)
            raise AuthenticationError(f"Identity endpoint unreachable: {e}") from e

        if r.status_code != 201:
            logger.warning("Keystone login rejected for user=%s status=%s", username, r.status_code)
            raise AuthenticationError(f"Keystone rejected credentials (HTTP {r.status_code})")

        token = r.headers.get("X-Subject-Token")
        if not token:
            raise AuthenticationError("Keystone response is missing the X-Subject-Token header")

        try:
            token_data = r.json().get("token", {})
        except ValueError as e:
            raise AuthenticationError("Keystone returned a non-JSON token body") from e

        session = Session(
            token=token,
            catalog=token_data.get("catalog", []),
            expires_at=token_data.get("expires_at", ""),
            user=token_data.get("user", {}),
            project=token_data.get("project", {}),
        )
        self._session = session
        logger.info(
            "Keystone login succeeded user=%s project=%s token=%s expires_at=%s",
            session.user.get("name", username),
            session.project.get("name", self.settings.project_name),
            mask_value(token),
            session.expires_at,
        )
        return session


# A single session manager for the FastAPI app
_manager: Optional[SessionManager] = None
_manager_lock = threading.Lock()


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                _manager = SessionManager(ConsoleSettings.from_env())
    return _manager
