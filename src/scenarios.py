import time
from dataclasses import dataclass, field
from enum import Enum

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cleanup import ERROR, NOT_FOUND, CleanupResult, cleanup_lead
from errors import AssertionViolation, ElementTimeout, NavigationTimeout
from leak_check import check_response, is_inbox_list_response
from locators import count_matches, find_first_visible, probe_optional, require, text_candidates
from session import (
    AUTHENTICATED_ROUTE,
    LOGIN_PATH,
    Session,
    assert_stays_on_login,
    establish_session,
    goto,
    on_login_route,
    settle,
    submit_login_form,
)
from settings import TEST_PREFIX, HarnessSettings, Role, resolve_credential


class ScenarioState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLEANED = "cleaned"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS = {
    ScenarioState.UNAUTHENTICATED: {ScenarioState.AUTHENTICATING, ScenarioState.CLEANED, ScenarioState.DONE},
    # A rejected login (negative case) returns to UNAUTHENTICATED
    ScenarioState.AUTHENTICATING: {ScenarioState.AUTHENTICATED, ScenarioState.UNAUTHENTICATED},
    ScenarioState.AUTHENTICATED: {ScenarioState.AUTHENTICATING, ScenarioState.CLEANED, ScenarioState.DONE},
    ScenarioState.CLEANED: {ScenarioState.DONE},
    ScenarioState.DONE: set(),
    ScenarioState.FAILED: set(),
}


class Access(Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


ROUTES = {
    "login": LOGIN_PATH,
    "contact_center": "/contact-center",
    "leads": "/crm/leads",
    "lead_create": "/crm/leads?action=create",
    "tasks": "/tasks",
    "routing": "/settings/contact-center/routing",
    "lines": "/settings/contact-center/lines",
}

ROUTE_MARKERS = {
    "contact_center": "contact-center-marker",
    "routing": "routing-marker",
    "lines": "lines-marker",
}

ACCESS_MATRIX = {
    Role.ADMIN: (("routing", Access.ALLOWED), ("lines", Access.ALLOWED)),
    Role.L1: (("contact_center", Access.ALLOWED), ("routing", Access.DENIED), ("lines", Access.DENIED)),
    Role.L2: (("contact_center", Access.ALLOWED), ("routing", Access.DENIED), ("lines", Access.DENIED)),
    Role.L3: (("contact_center", Access.ALLOWED), ("routing", Access.DENIED), ("lines", Access.DENIED)),
}

# Roles whose contact-center visit also asserts inboxList scope
LEAK_CHECK_ROLES = (Role.L2,)

# Synthetic pairs; not secrets
INVALID_CREDENTIALS = (
    ("invalid@test.com", "wrongpassword"),
    (TEST_PREFIX.lower() + "nobody@example.invalid", "not-a-password-123"),
)

SYNTHETIC_LEAD_FIELDS = {
    "lead-email-input": "test@wkconnect.de",
    "lead-phone-input": "+49 151 00000000",
    "lead-value-input": "0",
}


@dataclass
class ScenarioContext:
    """Per-execution state handed to both the scenario body and its cleanup hooks."""

    name: str
    page: object
    settings: HarnessSettings
    browser_context: object = None
    verbose: bool = False
    state: ScenarioState = ScenarioState.UNAUTHENTICATED
    transitions: list = field(default_factory=list)
    session: Session | None = None
    lead_name: str | None = None
    lead_submitted: bool = False
    observations: list = field(default_factory=list)
    cleanup_hooks: list = field(default_factory=list)
    cleanup_results: list = field(default_factory=list)

    def transition(self, new_state: ScenarioState) -> None:
        if new_state is ScenarioState.FAILED:
            if self.state is not ScenarioState.FAILED:
                self.transitions.append((self.state.value, new_state.value))
                self.state = new_state
            return
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid scenario transition {self.state.value} -> {new_state.value}")
        self.transitions.append((self.state.value, new_state.value))
        self.state = new_state

    async def authenticate(self, role: Role, target_path: str | None = None) -> Session:
        credential = resolve_credential(role)
        self.transition(ScenarioState.AUTHENTICATING)
        try:
            self.session = await establish_session(self.page, credential, self.settings, target_path, verbose=self.verbose)
        except Exception:
            self.transition(ScenarioState.FAILED)
            raise
        self.transition(ScenarioState.AUTHENTICATED)
        return self.session

    def register_cleanup(self, hook) -> None:
        self.cleanup_hooks.append(hook)

    async def active_page(self):
        """The scenario page, or a fresh one in the same context if the body left it closed."""
        if self.page.is_closed() and self.browser_context is not None:
            self.page = await self.browser_context.new_page()
        return self.page

    async def run_cleanups(self) -> list:
        for hook in self.cleanup_hooks:
            label = self.lead_name or getattr(hook, "__name__", "cleanup")
            try:
                result = await hook(self)
            except Exception as e:
                print(f"🧹 [CLEANUP] Hook for '{label}' failed: {type(e).__name__}: {e}")
                result = CleanupResult(lead_name=label, outcome=ERROR, error=str(e))
            self.cleanup_results.append(result)
        if self.cleanup_hooks and self.state is not ScenarioState.FAILED:
            self.transition(ScenarioState.CLEANED)
        return self.cleanup_results

    def observe(self, **observation) -> None:
        self.observations.append(observation)
        if self.verbose:
            print(f"→ Observed {observation}")


@dataclass
class Scenario:
    name: str
    group: str
    func: object
    roles: tuple = (Role.DEFAULT,)
    focus: bool = False
    timeout_s: float | None = None


SCENARIOS: list[Scenario] = []


def scenario(name: str, group: str, roles=(Role.DEFAULT,), focus: bool = False, timeout_s: float | None = None):
    """Register a scenario; declaration order is execution order. focus=True acts as "run only this"."""
    def decorator(func):
        SCENARIOS.append(Scenario(name=name, group=group, func=func, roles=tuple(roles), focus=focus, timeout_s=timeout_s))
        return func
    return decorator


# ---------------------------------------------------------------------------
# Access checks
# ---------------------------------------------------------------------------

async def expect_allowed(ctx: ScenarioContext, route: str) -> None:
    page = ctx.page
    await require(page, ROUTE_MARKERS[route], ctx.settings.allowed_timeout_ms, f"{route} content")
    denied = await count_matches(page, "access-denied")
    if denied:
        raise AssertionViolation(f"{route}: {denied} access-denied indicator(s) on an allowed route", diagnostics={"url": page.url})


async def expect_denied(ctx: ScenarioContext, route: str) -> str:
    """Denied means an access-denied indicator, or no protected content by the deadline. Never the content itself."""
    page = ctx.page
    if await find_first_visible(page, "access-denied", ctx.settings.denied_timeout_ms) is not None:
        return "indicator"
    if await find_first_visible(page, ROUTE_MARKERS[route], 0) is not None:
        raise AssertionViolation(f"{route}: protected content rendered for a denied role", diagnostics={"url": page.url})
    return "absent"


async def check_route(ctx: ScenarioContext, role: Role, route: str, expected: Access) -> dict:
    await goto(ctx.page, ctx.settings, ROUTES[route], verbose=ctx.verbose)
    if expected is Access.ALLOWED:
        await expect_allowed(ctx, route)
        observation = {"role": role.name, "route": ROUTES[route], "outcome": Access.ALLOWED.value}
    else:
        how = await expect_denied(ctx, route)
        observation = {"role": role.name, "route": ROUTES[route], "outcome": Access.DENIED.value, "signal": how}
    ctx.observe(**observation)
    return observation


async def check_route_with_leak_capture(ctx: ScenarioContext, role: Role, route: str, expected: Access) -> dict:
    """Open a route while passively capturing the inboxList response, then assert its scope."""
    page = ctx.page
    try:
        async with page.expect_response(is_inbox_list_response, timeout=ctx.settings.inbox_response_timeout_ms) as response_info:
            observation = await check_route(ctx, role, route, expected)
        response = await response_info.value
    except PlaywrightTimeoutError as e:
        raise NavigationTimeout(
            f"messaging.inboxList response not observed within {ctx.settings.inbox_response_timeout_ms}ms",
            diagnostics={"url": page.url},
        ) from e
    scope = await check_response(response, verbose=ctx.verbose)
    ctx.observe(role=role.name, check="inboxList", rows=scope.rows, my_count=scope.my_count, strict=scope.strict)
    return observation


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@scenario("auth: login succeeds with valid credentials", group="auth")
async def login_with_valid_credentials(ctx: ScenarioContext) -> None:
    await ctx.authenticate(Role.DEFAULT)
    url = ctx.page.url
    if on_login_route(url) or not AUTHENTICATED_ROUTE.search(url):
        raise AssertionViolation(f"Unexpected post-login URL: {url}")
    await require(ctx.page, "app-shell", ctx.settings.record_timeout_ms, "authenticated shell")


@scenario("auth: login rejected for invalid credentials", group="auth")
async def login_with_invalid_credentials(ctx: ScenarioContext) -> None:
    for username, password in INVALID_CREDENTIALS:
        ctx.transition(ScenarioState.AUTHENTICATING)
        await goto(ctx.page, ctx.settings, LOGIN_PATH, verbose=ctx.verbose)
        await submit_login_form(ctx.page, username, password, ctx.settings, verbose=ctx.verbose)
        await assert_stays_on_login(ctx.page, ctx.settings)
        ctx.transition(ScenarioState.UNAUTHENTICATED)
        ctx.observe(check="invalid-login", username=username, stayed_on_login=True)


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------

def make_rbac_scenario(role: Role):
    async def rbac_for_role(ctx: ScenarioContext) -> None:
        await ctx.authenticate(role)
        for route, expected in ACCESS_MATRIX[role]:
            if route == "contact_center" and role in LEAK_CHECK_ROLES:
                await check_route_with_leak_capture(ctx, role, route, expected)
            else:
                await check_route(ctx, role, route, expected)

    rbac_for_role.__name__ = f"rbac_{role.name.lower()}"
    return rbac_for_role


for _role in ACCESS_MATRIX:
    _suffix = " + inboxList leak check" if _role in LEAK_CHECK_ROLES else ""
    scenario(f"rbac: {_role.name} route access{_suffix}", group="rbac", roles=(_role,))(make_rbac_scenario(_role))


# ---------------------------------------------------------------------------
# Lead lifecycle
# ---------------------------------------------------------------------------

def new_lead_name() -> str:
    return f"{TEST_PREFIX}Lead_{int(time.time() * 1000)}"


async def cleanup_synthetic_lead(ctx: ScenarioContext) -> CleanupResult:
    if not ctx.lead_submitted:
        print(f"🧹 [CLEANUP] Lead '{ctx.lead_name}' was never submitted; nothing to clean")
        return CleanupResult(lead_name=ctx.lead_name or "", outcome=NOT_FOUND)
    page = await ctx.active_page()
    return await cleanup_lead(page, ctx.lead_name, ctx.settings, verbose=ctx.verbose)


@scenario("lead: create, verify and clean up a synthetic lead", group="lead")
async def lead_lifecycle(ctx: ScenarioContext) -> None:
    ctx.lead_name = new_lead_name()
    ctx.register_cleanup(cleanup_synthetic_lead)

    await ctx.authenticate(Role.DEFAULT)
    page = ctx.page
    settings = ctx.settings
    await goto(page, settings, ROUTES["lead_create"], verbose=ctx.verbose)

    dialog = await require(page, "create-lead-dialog", settings.record_timeout_ms, "create lead dialog")
    title = await require(dialog, "lead-title-input", settings.action_timeout_ms, "lead title input")
    await title.fill(ctx.lead_name)
    for slug, value in SYNTHETIC_LEAD_FIELDS.items():
        field_loc = await probe_optional(dialog, slug, settings.optional_probe_ms)
        if field_loc is not None:
            await field_loc.fill(value)
        elif ctx.verbose:
            print(f"→ Optional field {slug} not present")

    submit = await require(dialog, "create-lead-submit", settings.action_timeout_ms, "create lead button")
    ctx.lead_submitted = True
    await submit.click()

    try:
        await dialog.wait_for(state="hidden", timeout=settings.record_timeout_ms)
    except PlaywrightTimeoutError as e:
        raise ElementTimeout(f"Create lead dialog still open after {settings.record_timeout_ms}ms", diagnostics={"url": page.url}) from e

    await require(page, text_candidates(ctx.lead_name), settings.record_timeout_ms, f"lead '{ctx.lead_name}' in listing")
    ctx.observe(check="lead-created", lead_name=ctx.lead_name)
    print(f"✓ Lead '{ctx.lead_name}' created and verified")


# ---------------------------------------------------------------------------
# Smoke (read-only)
# ---------------------------------------------------------------------------

async def open_core_page(ctx: ScenarioContext, route: str, *markers: str) -> None:
    await goto(ctx.page, ctx.settings, ROUTES[route], verbose=ctx.verbose)
    await settle(ctx.page, ctx.settings)
    await require(ctx.page, "main-content", ctx.settings.record_timeout_ms, f"{route} main content")
    for marker in markers:
        await require(ctx.page, marker, ctx.settings.expect_timeout_ms, f"{route} {marker}")
    ctx.observe(check="smoke", route=ROUTES[route])


@scenario("smoke: shell visible after login", group="smoke")
async def smoke_shell(ctx: ScenarioContext) -> None:
    await ctx.authenticate(Role.DEFAULT)
    await require(ctx.page, "app-shell", ctx.settings.expect_timeout_ms, "authenticated shell")


@scenario("smoke: contact center loads", group="smoke")
async def smoke_contact_center(ctx: ScenarioContext) -> None:
    await ctx.authenticate(Role.DEFAULT)
    await open_core_page(ctx, "contact_center", "contact-center-tabs")


@scenario("smoke: CRM leads loads", group="smoke")
async def smoke_leads(ctx: ScenarioContext) -> None:
    await ctx.authenticate(Role.DEFAULT)
    await open_core_page(ctx, "leads", "leads-indicator")


@scenario("smoke: tasks loads", group="smoke")
async def smoke_tasks(ctx: ScenarioContext) -> None:
    await ctx.authenticate(Role.DEFAULT)
    await open_core_page(ctx, "tasks")
