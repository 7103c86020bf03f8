"""
Runtime configuration, read from environment variables (and a `.env` file if present).
"""

import os

from dataclasses import dataclass, field

from dotenv import load_dotenv

from xreadonly.policy.table import DEFAULT_REQUESTS_PATH, DEFAULT_CONTROLS_PATH

DEFAULT_START_URL = "https://x.com"
DEFAULT_SITE_DOMAINS = ("x.com", "twitter.com")
# Chrome mobile, so the site serves its full mobile web client.
CHROME_MOBILE_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36"
)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    debug: bool = False
    start_url: str = DEFAULT_START_URL
    site_domains: tuple[str, ...] = DEFAULT_SITE_DOMAINS
    profile_dir: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".xreadonly", "profile"))
    headless: bool = False
    user_agent: str = CHROME_MOBILE_UA
    external_browser: str | None = "firefox"
    server_port: int = 12354
    requests_path: str = DEFAULT_REQUESTS_PATH
    controls_path: str = DEFAULT_CONTROLS_PATH
    extra_css_path: str | None = None

    @staticmethod
    def from_env(dotenv_path: str | None = None) -> "Settings":
        """
        Build settings from `XREADONLY_*` environment variables. Values in a `.env` file
        never override variables that are already set.
        """
        load_dotenv(dotenv_path)
        defaults = Settings()
        port = os.getenv("XREADONLY_SERVER_PORT")
        domains = os.getenv("XREADONLY_SITE_DOMAINS")
        return Settings(
            debug=_env_flag("XREADONLY_DEBUG"),
            start_url=os.getenv("XREADONLY_START_URL", defaults.start_url),
            site_domains=tuple(d.strip().lower() for d in domains.split(",") if d.strip()) if domains else defaults.site_domains,
            profile_dir=os.getenv("XREADONLY_PROFILE_DIR", defaults.profile_dir),
            headless=_env_flag("XREADONLY_HEADLESS"),
            external_browser=os.getenv("XREADONLY_EXTERNAL_BROWSER", defaults.external_browser) or None,
            server_port=int(port) if port else defaults.server_port,
            requests_path=os.getenv("XREADONLY_REQUESTS_PATH", defaults.requests_path),
            controls_path=os.getenv("XREADONLY_CONTROLS_PATH", defaults.controls_path),
            extra_css_path=os.getenv("XREADONLY_EXTRA_CSS_PATH") or None,
        )
