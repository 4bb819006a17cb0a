"""In-memory stand-ins for Playwright pages and a tiny simulated CRM.

The fakes implement only the slice of the Playwright API the harness uses:
role/label/text/css lookups (optionally scoped to a container), ``first``,
visibility, counting, click/fill, ``wait_for`` and response capture.
"""

import urllib.parse
from types import SimpleNamespace

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from settings import HarnessSettings


BASE_URL = "https://crm.example.test"


class FakeElement:
    def __init__(self, role=None, name="", label="", text="", css=(), visible=True, parent=None, on_click=None, html=None):
        self.role = role
        self.name = name
        self.label = label
        self.text = text
        self.css = set(css)
        self.visible = visible
        self.parent = parent
        self.on_click = on_click
        self.html = html
        self.value = ""
        self.clicks = 0

    def __repr__(self):
        return f"<FakeElement role={self.role} name={self.name!r} label={self.label!r} text={self.text!r}>"


def _match(pattern, value) -> bool:
    if not value:
        return False
    if isinstance(pattern, str):
        return pattern in value
    return bool(pattern.search(value))


class FakeScope:
    """Lookup methods shared by FakePage (root scope) and FakeLocator (container scope)."""

    def _child(self, predicate):
        raise NotImplementedError

    def get_by_role(self, role, name=None):
        return self._child(lambda e: e.role == role and (name is None or _match(name, e.name)))

    def get_by_label(self, pattern):
        return self._child(lambda e: _match(pattern, e.label))

    def get_by_text(self, pattern, exact=False):
        if isinstance(pattern, str) and exact:
            return self._child(lambda e: e.text == pattern)
        return self._child(lambda e: _match(pattern, e.text))

    def locator(self, selector):
        return self._child(lambda e: selector in e.css)


class FakeLocator(FakeScope):
    def __init__(self, page, predicate, parent=None, only_first=False):
        self.page = page
        self.predicate = predicate
        self.parent = parent
        self.only_first = only_first

    def _child(self, predicate):
        return FakeLocator(self.page, predicate, parent=self)

    def matches(self) -> list:
        found = [e for e in self.page.elements if self.predicate(e)]
        if self.parent is not None:
            containers = self.parent.matches()
            found = [e for e in found if e.parent in containers]
        return found[:1] if self.only_first else found

    @property
    def first(self):
        return FakeLocator(self.page, self.predicate, parent=self.parent, only_first=True)

    def filter(self, has_text=None):
        base = self.predicate
        return FakeLocator(self.page, lambda e: base(e) and _match(has_text, e.text), parent=self.parent)

    def _one(self) -> FakeElement:
        found = self.matches()
        if not found:
            raise PlaywrightTimeoutError("fake locator: no element")
        return found[0]

    async def is_visible(self) -> bool:
        found = self.matches()
        return bool(found) and found[0].visible

    async def count(self) -> int:
        return len(self.matches())

    async def click(self, **kwargs):
        el = self._one()
        el.clicks += 1
        self.page.actions.append(("click", el.name or el.label or el.text))
        if el.on_click is not None:
            el.on_click(self.page)

    async def fill(self, value, **kwargs):
        el = self._one()
        el.value = value
        self.page.actions.append(("fill", el.label or el.name, value))

    async def wait_for(self, state="visible", timeout=None):
        visible = any(e.visible for e in self.matches())
        if state == "hidden" and visible:
            raise PlaywrightTimeoutError("fake locator: still visible")
        if state == "visible" and not visible:
            raise PlaywrightTimeoutError("fake locator: not visible")

    async def inner_text(self) -> str:
        return self._one().text

    async def inner_html(self) -> str:
        el = self._one()
        return el.html or f"<div>{el.text}</div>"

    async def all_inner_texts(self) -> list:
        return [e.text or e.name for e in self.matches()]


class FakeResponse:
    def __init__(self, url, body, method="GET"):
        self.url = url
        self.request = SimpleNamespace(method=method)
        self._body = body

    async def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _ResponseWaiter:
    def __init__(self, page, predicate):
        self.page = page
        self.predicate = predicate
        self._found = None

    async def __aenter__(self):
        self._start = len(self.page.responses)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            return False
        for response in self.page.responses[self._start:]:
            if self.predicate(response):
                self._found = response
                return False
        raise PlaywrightTimeoutError("fake expect_response: no matching response")

    @property
    def value(self):
        async def _get():
            return self._found
        return _get()


class FakePage(FakeScope):
    def __init__(self, url="about:blank"):
        self.url = url
        self.elements = []
        self.actions = []
        self.visits = []
        self.responses = []
        self.waited = []
        self.screenshots = []
        self.closed = False
        self.on_goto = None
        self.video = None
        self.handlers = {}

    def _child(self, predicate):
        return FakeLocator(self, predicate)

    def add(self, **kwargs) -> FakeElement:
        el = FakeElement(**kwargs)
        self.elements.append(el)
        return el

    async def goto(self, url, wait_until=None, timeout=None):
        self.url = url
        self.visits.append(url)
        if self.on_goto is not None:
            self.on_goto(self)

    async def wait_for_load_state(self, state="load", timeout=None):
        return None

    async def wait_for_timeout(self, ms):
        self.waited.append(ms)

    def is_closed(self) -> bool:
        return self.closed

    async def query_selector_all(self, selector):
        return []

    async def screenshot(self, path=None, full_page=False):
        self.screenshots.append(path)
        return b""

    def expect_response(self, predicate, timeout=None):
        return _ResponseWaiter(self, predicate)

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def close(self):
        self.closed = True


class FakeCrm:
    """Just enough of the CRM to log in, gate routes by role, and create/archive leads."""

    def __init__(self, users=None, lead_controls=("archive",), inbox_body=None, optional_fields=("email", "phone")):
        self.users = users or {}
        self.lead_controls = set(lead_controls)
        self.inbox_body = inbox_body
        self.optional_fields = set(optional_fields)
        self.leads = {}
        self.current_role = None
        self.create_submits = 0

    def attach(self, page: FakePage) -> FakePage:
        page.on_goto = self.render
        return page

    def navigate(self, page, path):
        page.url = BASE_URL + path
        self.render(page)

    def render(self, page: FakePage) -> None:
        parsed = urllib.parse.urlparse(page.url)
        path, query = parsed.path, parsed.query
        if self.current_role is None and path != "/login":
            page.url = BASE_URL + "/login"
            path, query = "/login", ""
        page.elements = []
        if path == "/login":
            self._render_login(page)
            return
        self._render_shell(page)
        if path == "/crm/leads":
            self._render_leads(page, create="action=create" in query)
        elif path == "/contact-center":
            page.add(role="main", text="")
            page.add(role="heading", name="Контакт-центр", text="Контакт-центр")
            page.add(role="tab", name="Мои", text="Мои")
            if self.inbox_body is not None:
                page.responses.append(FakeResponse(BASE_URL + "/api/trpc/messaging.inboxList?batch=1", self.inbox_body))
        elif path == "/tasks":
            page.add(role="main", text="")
        elif path in ("/settings/contact-center/routing", "/settings/contact-center/lines"):
            if self.current_role != "admin":
                page.add(text="Доступ запрещён")
            elif path.endswith("routing"):
                page.add(role="main", text="")
                page.add(role="heading", name="Routing", text="Routing")
            else:
                page.add(role="main", text="")
                page.add(role="heading", name="Линии", text="Линии")

    def _render_login(self, page):
        user = page.add(label="Логин", css=("#username",))
        password = page.add(label="Пароль", css=("#password",))

        def submit(p):
            entry = self.users.get(user.value)
            if entry and entry[0] == password.value:
                self.current_role = entry[1]
                self.navigate(p, "/crm/leads")

        page.add(role="button", name="Войти", text="Войти", on_click=submit)

    def _render_shell(self, page):
        page.add(css=("aside",), text="CRM Лиды Контакт-центр")
        page.add(role="link", name="Лиды", text="Лиды")

    def _render_leads(self, page, create=False):
        page.add(role="main", text="")
        page.add(role="button", name="Новый лид", text="Новый лид")
        page.add(role="table", name="")
        for name, status in self.leads.items():
            if status in ("archived", "deleted"):
                continue
            page.add(text=name, on_click=lambda p, n=name: self._render_lead_detail(p, n))
        if create:
            dialog = page.add(role="dialog", name="Создать новый лид")
            title = page.add(label="Название лида", parent=dialog)
            if "email" in self.optional_fields:
                page.add(label="Email", parent=dialog)
            if "phone" in self.optional_fields:
                page.add(label="Телефон", parent=dialog)

            def create_lead(p):
                self.create_submits += 1
                self.leads[title.value] = "new"
                self.navigate(p, "/crm/leads")

            page.add(role="button", name="Создать лид", parent=dialog, on_click=create_lead)

    def _render_lead_detail(self, page, name):
        page.elements = [e for e in page.elements if e.role in ("link",) or "aside" in e.css]
        panel = page.add(role="dialog", name=name, text=name)
        page.add(role="heading", name=name, text=name, parent=panel)

        def set_status(status):
            def _apply(p):
                self.leads[name] = status
            return _apply

        if "archive" in self.lead_controls:
            page.add(role="button", name="Архивировать", parent=panel, on_click=set_status("archived"))
        if "delete" in self.lead_controls:
            def ask_confirm(p):
                p.add(role="button", name="Подтвердить", on_click=set_status("deleted"))
            page.add(role="button", name="Удалить", parent=panel, on_click=ask_confirm)
        if "edit" in self.lead_controls:
            pending = {}

            def open_edit(p):
                def open_status(p2):
                    def choose_lost(p3):
                        pending["status"] = "lost"
                    p2.add(role="option", name="Потерян", on_click=choose_lost)
                p.add(role="combobox", name="Статус", parent=panel, on_click=open_status)

                def save(p2):
                    if "status" in pending:
                        self.leads[name] = pending["status"]
                p.add(role="button", name="Сохранить", parent=panel, on_click=save)
            page.add(role="button", name="Редактировать", parent=panel, on_click=open_edit)


@pytest.fixture
def fast_settings():
    """Settings with every bound at zero: each wait does exactly one check."""
    return HarnessSettings(
        base_url=BASE_URL,
        action_timeout_ms=0,
        navigation_timeout_ms=0,
        expect_timeout_ms=0,
        login_timeout_ms=0,
        login_settle_ms=0,
        allowed_timeout_ms=0,
        denied_timeout_ms=0,
        record_timeout_ms=0,
        optional_probe_ms=0,
        cleanup_lookup_ms=0,
        network_idle_ms=0,
        inbox_response_timeout_ms=0,
        test_timeout_s=5,
        cleanup_timeout_s=5,
    )


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def crm_env(monkeypatch):
    """Credentials for every role, pointing at FakeCrm users."""
    for prefix, user in (
        ("CRM", "agent@example.test"),
        ("CRM_ADMIN", "admin@example.test"),
        ("CRM_L1", "l1@example.test"),
        ("CRM_L2", "l2@example.test"),
        ("CRM_L3", "l3@example.test"),
    ):
        monkeypatch.setenv(f"{prefix}_USER", user)
        monkeypatch.setenv(f"{prefix}_PASS", "secret-" + prefix.lower())
        monkeypatch.delenv(f"{prefix}_TOTP", raising=False)
    return {
        "agent@example.test": ("secret-crm", "agent"),
        "admin@example.test": ("secret-crm_admin", "admin"),
        "l1@example.test": ("secret-crm_l1", "l1"),
        "l2@example.test": ("secret-crm_l2", "l2"),
        "l3@example.test": ("secret-crm_l3", "l3"),
    }


