import logging
import threading
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proxy:
    protocol: str  # http, https, socks5
    host: str
    port: int
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> "Proxy":
        """Parse a proxy URL into a Proxy object."""
        parsed = urlparse(url.strip())
        return cls(
            protocol=parsed.scheme or "http",
            host=parsed.hostname or "",
            port=parsed.port or 8080,
            username=parsed.username,
            password=parsed.password,
        )

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def server(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def to_playwright(self) -> dict:
        """Playwright `proxy=` launch/context option."""
        result = {"server": self.server}
        if self.username:
            result["username"] = self.username
        if self.password:
            result["password"] = self.password
        return result

    def to_url(self) -> str:
        """Full proxy URL (httpx `proxy=` and Chrome `--proxy-server`)."""
        if self.username and self.password:
            return f"{self.protocol}://{self.username}:{self.password}@{self.host}:{self.port}"
        return self.server


def mask_url(url: str) -> str:
    """Mask credentials in a proxy URL for display."""
    parsed = urlparse(url)
    if parsed.username:
        masked_user = parsed.username[:2] + "***"
        masked_pass = "***" if parsed.password else ""
        netloc = f"{masked_user}:{masked_pass}@{parsed.hostname}"
        if parsed.port:
            netloc += f":{parsed.port}"
        return urlunparse((parsed.scheme, netloc, parsed.path, "", "", ""))
    return url


class ProxyRotator:
    """Round-robin over configured proxies, skipping ones marked failed.

    When every proxy has been marked failed the failed set is cleared and
    rotation starts over, so a transient outage never disables proxying for
    the rest of the process.
    """

    def __init__(self, proxies: list[Proxy] | None = None):
        self._proxies = list(proxies or [])
        self._index = 0
        self._failed: set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_urls(cls, urls: list[str]) -> "ProxyRotator":
        """Create a ProxyRotator from a list of proxy URLs."""
        return cls([Proxy.from_url(u) for u in urls if u.strip()])

    @property
    def has_proxies(self) -> bool:
        return len(self._proxies) > 0

    @property
    def failed(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._failed)

    def next(self) -> Proxy | None:
        with self._lock:
            if not self._proxies:
                return None
            if len(self._failed) >= len(self._proxies):
                logger.info("All %d proxies marked failed, resetting", len(self._proxies))
                self._failed.clear()
            for _ in range(len(self._proxies)):
                proxy = self._proxies[self._index]
                self._index = (self._index + 1) % len(self._proxies)
                if proxy.key not in self._failed:
                    return proxy
            # Unreachable: the reset above guarantees a live proxy
            return None

    def mark_failed(self, proxy: Proxy) -> None:
        with self._lock:
            self._failed.add(proxy.key)
        logger.info("Proxy marked failed: %s", mask_url(proxy.to_url()))

    def mark_ok(self, proxy: Proxy) -> None:
        with self._lock:
            self._failed.discard(proxy.key)
