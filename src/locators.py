import asyncio
import re

from playwright.async_api import Error as PlaywrightError

from errors import AmbiguousElement, ElementTimeout


POLL_INTERVAL_S = 0.25

# Lower rank wins; ids and classes are implementation details of the page under test.
ENGINE_PRIORITY = {"role": 0, "label": 1, "text": 2, "css": 3}


def bilingual(*terms: str) -> str:
    """Join localized and English terms into one alternation (compiled case-insensitive)."""
    return "|".join(terms)


# Ordered candidates per UI element (self-healing hints). RU first, EN second.
CANDIDATES = {
    "username-input": [
        {"engine": "label", "name_regex": bilingual("логин", "email", "username")},
        {"engine": "css", "value": "#username"},
        {"engine": "css", "value": "input[name='username'], input[type='email']"},
    ],
    "password-input": [
        {"engine": "label", "name_regex": bilingual("пароль", "password")},
        {"engine": "css", "value": "#password"},
        {"engine": "css", "value": "input[type='password']"},
    ],
    "login-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("войти", "login", "log in", "sign in")},
        {"engine": "css", "value": "button[type='submit']"},
    ],
    "otp-input": [
        {"engine": "label", "name_regex": bilingual("код", r"(one[- ]?time|verification|auth|otp).*code")},
        {"engine": "css", "value": "input[name*='otp'], input[id*='otp'], input[autocomplete='one-time-code']"},
    ],
    "otp-submit": [
        {"engine": "role", "role": "button", "name_regex": bilingual("подтвердить", "продолжить", "verify", "continue", "submit")},
        {"engine": "css", "value": "button[type='submit']"},
    ],
    # Live regions (route announcers) stay mounted and empty; only an alert with text is an error.
    "login-error": [
        {"engine": "role", "role": "alert", "has_text": r"\S"},
        {"engine": "css", "value": "[data-sonner-toast][data-type='error'], .text-destructive, .error", "has_text": r"\S"},
    ],
    "app-shell": [
        {"engine": "role", "role": "link", "name_regex": bilingual("лиды", "leads")},
        {"engine": "role", "role": "button", "name_regex": r"^crm$"},
        {"engine": "css", "value": "aside", "has_text": bilingual("crm", "лиды", "контакт", "contact")},
    ],
    "main-content": [
        {"engine": "role", "role": "main"},
        {"engine": "css", "value": "main, [role='main'], .content"},
    ],
    "access-denied": [
        {"engine": "text", "name_regex": bilingual("доступ запрещ", "access denied", "forbidden", "нет доступа")},
    ],
    "contact-center-marker": [
        {"engine": "role", "role": "heading", "name_regex": bilingual("контакт-центр", "contact center")},
        {"engine": "text", "name_regex": bilingual("контакт-центр", "contact center")},
    ],
    "contact-center-tabs": [
        {"engine": "role", "role": "tab"},
        {"engine": "css", "value": "button[role='tab'], [data-state]"},
    ],
    "routing-marker": [
        {"engine": "role", "role": "heading", "name_regex": bilingual("маршрутизац", "routing")},
        {"engine": "text", "name_regex": bilingual("маршрутизац", "routing")},
    ],
    "lines-marker": [
        {"engine": "role", "role": "heading", "name_regex": bilingual("линии", "lines")},
        {"engine": "role", "role": "main"},
    ],
    "leads-indicator": [
        {"engine": "role", "role": "button", "name_regex": bilingual("новый лид", "new lead")},
        {"engine": "role", "role": "table"},
        {"engine": "css", "value": "[data-testid*='lead']"},
    ],
    "create-lead-dialog": [
        {"engine": "role", "role": "dialog", "name_regex": bilingual("создать новый лид", "create new lead", "new lead")},
        {"engine": "role", "role": "dialog"},
    ],
    "lead-title-input": [
        {"engine": "label", "name_regex": bilingual("название лида", "lead name", "lead title", "title")},
    ],
    "lead-email-input": [
        {"engine": "label", "name_regex": bilingual("почта", "e-?mail")},
    ],
    "lead-phone-input": [
        {"engine": "label", "name_regex": bilingual("телефон", "phone")},
    ],
    "lead-value-input": [
        {"engine": "label", "name_regex": bilingual("сумма", "стоимость", "value", "amount")},
    ],
    "create-lead-submit": [
        {"engine": "role", "role": "button", "name_regex": bilingual("создать лид", "create lead")},
        {"engine": "css", "value": "button[type='submit']"},
    ],
    "archive-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("архив", "archive")},
    ],
    "delete-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("удалить", "delete")},
    ],
    "confirm-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("подтвердить", r"^да$", "confirm", r"^yes$")},
    ],
    "edit-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("редактировать", "edit")},
    ],
    "status-field": [
        {"engine": "role", "role": "combobox", "name_regex": bilingual("статус", "status")},
        {"engine": "css", "value": "#status, [id*='status']"},
    ],
    "lost-option": [
        {"engine": "role", "role": "option", "name_regex": bilingual("потерян", "lost")},
    ],
    "save-button": [
        {"engine": "role", "role": "button", "name_regex": bilingual("сохранить", "save")},
    ],
}


def check_candidate_order(candidates: list[dict]) -> None:
    """Raise ValueError if candidates are not ordered role → label → text → css."""
    ranks = []
    for cand in candidates:
        engine = cand.get("engine")
        if engine not in ENGINE_PRIORITY:
            raise ValueError(f"Unknown locator engine: {engine}")
        ranks.append(ENGINE_PRIORITY[engine])
    if ranks != sorted(ranks):
        raise ValueError(f"Candidates out of priority order: {[c['engine'] for c in candidates]}")


def text_candidates(text: str) -> list[dict]:
    """Exact-text candidate for dynamic content such as a synthetic record name."""
    return [{"engine": "text", "name_regex": rf"^\s*{re.escape(text)}\s*$"}]


def record_panel_candidates(text: str) -> list[dict]:
    """Containers for an opened record: a dialog/drawer or region that shows the record's name."""
    named = rf"(?<!\w){re.escape(text)}(?!\w)"
    return [
        {"engine": "role", "role": "dialog", "has_text": named},
        {"engine": "role", "role": "region", "has_text": named},
        {"engine": "css", "value": "main, [role='main']", "has_text": named},
    ]


def candidates_for(target) -> list[dict]:
    if isinstance(target, str):
        try:
            return CANDIDATES[target]
        except KeyError:
            raise KeyError(f"No locator candidates registered for '{target}'") from None
    return list(target)


def build_locator(scope, target: dict):
    """Build a Playwright locator for one candidate, relative to a page or a container locator."""
    engine = target.get("engine")
    pattern = re.compile(target["name_regex"], re.I) if target.get("name_regex") else None
    if engine == "role":
        if pattern is None:
            loc = scope.get_by_role(target["role"])
        else:
            loc = scope.get_by_role(target["role"], name=pattern)
    elif engine == "label":
        loc = scope.get_by_label(pattern)
    elif engine == "text":
        loc = scope.get_by_text(pattern)
    elif engine == "css":
        loc = scope.locator(target["value"])
    else:
        raise ValueError(f"Unknown locator engine: {engine}")
    if target.get("has_text"):
        loc = loc.filter(has_text=re.compile(target["has_text"], re.I))
    return loc


async def find_first_visible(scope, target, timeout_ms: int = 0):
    """Return the first visible match, trying candidates in order until the bound elapses.

    Returns None on absence; callers decide whether that is an error.
    """
    candidates = candidates_for(target)
    loop = asyncio.get_running_loop()
    end = loop.time() + max(timeout_ms, 0) / 1000
    while True:
        for cand in candidates:
            loc = build_locator(scope, cand).first
            try:
                if await loc.is_visible():
                    return loc
            except PlaywrightError:
                continue
        if loop.time() >= end:
            return None
        await asyncio.sleep(POLL_INTERVAL_S)


async def find_sole_visible(scope, target, timeout_ms: int = 0):
    """Like find_first_visible, but the winning candidate must match exactly one element.

    Used before destructive clicks: several matches raise AmbiguousElement instead of
    picking one.
    """
    candidates = candidates_for(target)
    loop = asyncio.get_running_loop()
    end = loop.time() + max(timeout_ms, 0) / 1000
    while True:
        for cand in candidates:
            loc = build_locator(scope, cand)
            try:
                if not await loc.first.is_visible():
                    continue
                matches = await loc.count()
            except PlaywrightError:
                continue
            if matches > 1:
                raise AmbiguousElement(
                    f"{matches} elements match {target if isinstance(target, str) else cand}",
                    diagnostics={"candidate": cand, "matches": matches},
                )
            return loc.first
        if loop.time() >= end:
            return None
        await asyncio.sleep(POLL_INTERVAL_S)


async def require(scope, target, timeout_ms: int, what: str | None = None):
    loc = await find_first_visible(scope, target, timeout_ms)
    if loc is None:
        label = what or (target if isinstance(target, str) else "element")
        raise ElementTimeout(
            f"{label} not visible within {timeout_ms}ms",
            diagnostics={"candidates": candidates_for(target)},
        )
    return loc


async def probe_optional(scope, target, timeout_ms: int = 2000):
    """Short existence check for fields that only some form revisions render."""
    return await find_first_visible(scope, target, timeout_ms)


async def count_matches(scope, target) -> int:
    total = 0
    for cand in candidates_for(target):
        try:
            total += await build_locator(scope, cand).count()
        except PlaywrightError:
            continue
    return total


async def build_element_inventory(page, limit: int = 50) -> dict:
    """Collect visible button/link/alert texts to make selector drift diagnosable."""
    inventory: dict[str, list] = {"buttons": [], "links": [], "alerts": [], "testids": []}

    async def collect_role(role: str, key: str):
        try:
            texts = await page.get_by_role(role).all_inner_texts()
        except PlaywrightError:
            return
        for txt in texts[:limit]:
            txt = (txt or "").strip()
            if txt and txt not in inventory[key]:
                inventory[key].append(txt)

    await collect_role("button", "buttons")
    await collect_role("link", "links")
    await collect_role("alert", "alerts")
    try:
        testid_els = await page.query_selector_all("[data-testid]")
        for el in testid_els[:limit]:
            v = await el.get_attribute("data-testid")
            if v and v not in inventory["testids"]:
                inventory["testids"].append(v)
    except PlaywrightError:
        pass
    return inventory
