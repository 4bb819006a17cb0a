import asyncio
import re
import urllib.parse
from dataclasses import dataclass

import pyotp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from errors import AssertionViolation, NavigationTimeout
from locators import (
    POLL_INTERVAL_S,
    build_element_inventory,
    find_first_visible,
    probe_optional,
    require,
)
from settings import Credential, HarnessSettings


LOGIN_PATH = "/login"
AUTHENTICATED_ROUTE = re.compile(r"/(crm|dashboard|contact-center|tasks)(/|\?|$)")

MAX_MARKUP_CHARS = 2000


@dataclass
class Session:
    credential: Credential
    landing_url: str
    established: bool = False


def on_login_route(url: str) -> bool:
    path = urllib.parse.urlparse(url).path.rstrip("/")
    return path == LOGIN_PATH or path.endswith(LOGIN_PATH)


async def collect_diagnostics(page) -> dict:
    """Gather URL, visible error text and markup before a login/navigation failure is raised."""
    diag = {"url": "", "alerts": [], "error_markup": "", "inventory": {}}
    try:
        diag["url"] = page.url
    except PlaywrightError:
        pass
    try:
        err = await find_first_visible(page, "login-error", 0)
        if err is not None:
            diag["alerts"].append((await err.inner_text()).strip())
            diag["error_markup"] = (await err.inner_html())[:MAX_MARKUP_CHARS]
    except PlaywrightError:
        pass
    diag["inventory"] = await build_element_inventory(page)
    for alert in diag["inventory"].get("alerts", []):
        if alert not in diag["alerts"]:
            diag["alerts"].append(alert)
    return diag


async def settle(page, settings: HarnessSettings) -> None:
    """Best-effort wait for network idle; long-polling pages never idle, so the bound is tolerated."""
    try:
        await page.wait_for_load_state("networkidle", timeout=settings.network_idle_ms)
    except PlaywrightTimeoutError:
        pass


async def goto(page, settings: HarnessSettings, path: str, verbose: bool = False) -> None:
    target = settings.url(path)
    if verbose:
        print(f"→ Navigating to {target}")
    try:
        await page.goto(target, wait_until="domcontentloaded", timeout=settings.navigation_timeout_ms)
    except PlaywrightTimeoutError as e:
        raise NavigationTimeout(
            f"Navigation to {target} exceeded {settings.navigation_timeout_ms}ms",
            diagnostics=await collect_diagnostics(page),
        ) from e


async def submit_login_form(page, username: str, password: str, settings: HarnessSettings, verbose: bool = False) -> None:
    user_input = await require(page, "username-input", settings.action_timeout_ms, "login input")
    await user_input.fill(username)
    pass_input = await require(page, "password-input", settings.action_timeout_ms, "password input")
    await pass_input.fill(password)
    submit = await require(page, "login-button", settings.action_timeout_ms, "login button")
    await submit.click()
    if verbose:
        print("→ Submitted login form")


async def submit_one_time_code(page, totp_secret: str, settings: HarnessSettings, verbose: bool = False) -> bool:
    """Fill a TOTP code if the second-factor step is shown. Returns False when no code field appeared."""
    otp_input = await probe_optional(page, "otp-input", settings.optional_probe_ms)
    if otp_input is None:
        return False
    code = pyotp.TOTP(totp_secret).now()
    await otp_input.fill(code)
    submit = await require(page, "otp-submit", settings.action_timeout_ms, "one-time code submit")
    await submit.click()
    if verbose:
        print("→ One-time code submitted")
    return True


async def wait_for_shell(page, settings: HarnessSettings, verbose: bool = False) -> None:
    """Block until off the login route with the app shell visible, an inline error shows, or the bound elapses."""
    loop = asyncio.get_running_loop()
    end = loop.time() + settings.login_timeout_ms / 1000
    while True:
        if not on_login_route(page.url):
            if await find_first_visible(page, "app-shell", 0) is not None:
                if verbose:
                    print(f"✓ Authenticated shell visible at {page.url}")
                return
        elif await find_first_visible(page, "login-error", 0) is not None:
            raise AssertionViolation("Login rejected: inline error shown", diagnostics=await collect_diagnostics(page))
        if loop.time() >= end:
            raise NavigationTimeout(
                f"Authenticated shell not visible within {settings.login_timeout_ms}ms",
                diagnostics=await collect_diagnostics(page),
            )
        await asyncio.sleep(POLL_INTERVAL_S)


async def establish_session(page, credential: Credential, settings: HarnessSettings, target_path: str | None = None, verbose: bool = False) -> Session:
    if verbose:
        print(f"→ Logging in as role {credential.role.name}")
    await goto(page, settings, LOGIN_PATH, verbose=verbose)
    await submit_login_form(page, credential.username, credential.password, settings, verbose=verbose)
    if credential.totp_secret:
        await submit_one_time_code(page, credential.totp_secret, settings, verbose=verbose)
    await wait_for_shell(page, settings, verbose=verbose)
    session = Session(credential=credential, landing_url=page.url, established=True)
    if target_path:
        await goto(page, settings, target_path, verbose=verbose)
    return session


async def assert_stays_on_login(page, settings: HarnessSettings) -> None:
    """Rejected credentials must leave the browser on the login route; error copy is not inspected."""
    await page.wait_for_timeout(settings.login_settle_ms)
    if not on_login_route(page.url):
        raise AssertionViolation(
            f"Expected to remain on {LOGIN_PATH}, navigated to {page.url}",
            diagnostics=await collect_diagnostics(page),
        )
