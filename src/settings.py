import os
import urllib.parse
from dataclasses import dataclass, field
from enum import Enum

from errors import ConfigurationError


DEFAULT_BASE_URL = "https://crm.wkconnect.de"

# Every record the harness creates carries this prefix; nothing else may be mutated.
TEST_PREFIX = "TEST_"


class Role(Enum):
    DEFAULT = "CRM"
    ADMIN = "CRM_ADMIN"
    L1 = "CRM_L1"
    L2 = "CRM_L2"
    L3 = "CRM_L3"

    @property
    def env_prefix(self) -> str:
        return self.value


@dataclass(frozen=True)
class Credential:
    role: Role
    username: str
    password: str = field(repr=False)
    totp_secret: str | None = field(default=None, repr=False)


def resolve_credential(role: Role, environ=None) -> Credential:
    """Read {PREFIX}_USER / {PREFIX}_PASS (and optional {PREFIX}_TOTP) for a role."""
    env = os.environ if environ is None else environ
    user_var = f"{role.env_prefix}_USER"
    pass_var = f"{role.env_prefix}_PASS"
    missing = [name for name in (user_var, pass_var) if not env.get(name)]
    if missing:
        raise ConfigurationError(f"Missing env: {' and '.join(missing)} (role {role.name})")
    return Credential(
        role=role,
        username=env[user_var],
        password=env[pass_var],
        totp_secret=env.get(f"{role.env_prefix}_TOTP") or None,
    )


def _env_flag(value: str | None) -> bool:
    return bool(value) and value.strip().lower() not in ("0", "false", "no", "")


def _env_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class HarnessSettings:
    base_url: str = DEFAULT_BASE_URL
    ci: bool = False
    retries: int = 0

    # Bounded waits (ms unless suffixed _s)
    action_timeout_ms: int = 15000
    navigation_timeout_ms: int = 30000
    expect_timeout_ms: int = 10000
    login_timeout_ms: int = 30000
    login_settle_ms: int = 3000
    allowed_timeout_ms: int = 30000
    denied_timeout_ms: int = 15000
    record_timeout_ms: int = 15000
    optional_probe_ms: int = 2000
    cleanup_lookup_ms: int = 5000
    network_idle_ms: int = 10000
    inbox_response_timeout_ms: int = 60000
    test_timeout_s: float = 60
    cleanup_timeout_s: float = 45

    # Failure diagnostics, mirroring trace on-first-retry / video retain-on-failure
    trace_on_first_retry: bool = True
    retain_video_on_failure: bool = True
    screenshot_on_failure: bool = True

    viewport: dict = field(default_factory=lambda: {"width": 1366, "height": 900})

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "HarnessSettings":
        env = os.environ if environ is None else environ
        ci = _env_flag(env.get("CI"))
        settings = cls(
            base_url=(env.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            ci=ci,
            retries=_env_int(env, "E2E_RETRIES", 1 if ci else 0),
            test_timeout_s=_env_int(env, "E2E_TEST_TIMEOUT_S", 60),
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(settings, key, value)
        settings.validate()
        return settings

    def validate(self) -> None:
        parsed = urllib.parse.urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigurationError(f"BASE_URL must be an absolute http(s) URL, got {self.base_url!r}")
        if self.retries < 0:
            raise ConfigurationError("retries must be >= 0")

    @property
    def base_host(self) -> str:
        return urllib.parse.urlparse(self.base_url).hostname or ""

    def url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")
