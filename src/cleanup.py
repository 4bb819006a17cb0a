import asyncio
from dataclasses import dataclass

from errors import AmbiguousElement, CleanupError
from locators import find_first_visible, find_sole_visible, record_panel_candidates, text_candidates
from session import goto, settle
from settings import TEST_PREFIX, HarnessSettings


LEADS_PATH = "/crm/leads"

ARCHIVED = "archived"
DELETED = "deleted"
DEMOTED = "demoted"
NOT_FOUND = "not_found"
UNRESOLVED = "unresolved"
REFUSED = "refused"
ERROR = "error"

EDIT_SETTLE_MS = 500


@dataclass
class CleanupResult:
    lead_name: str
    outcome: str
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (ARCHIVED, DELETED, DEMOTED, NOT_FOUND)

    def to_dict(self) -> dict:
        return {"lead_name": self.lead_name, "outcome": self.outcome, "ok": self.ok, "error": self.error}


async def run_guarded(lead_name: str, action, timeout_s: float) -> CleanupResult:
    """Run a cleanup coroutine factory with its own time budget; never raises."""
    try:
        outcome = await asyncio.wait_for(action(), timeout=timeout_s)
        return CleanupResult(lead_name=lead_name, outcome=outcome)
    except asyncio.TimeoutError:
        error = f"cleanup exceeded {timeout_s}s"
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
    print(f"🧹 [CLEANUP] Error during cleanup of '{lead_name}': {error}")
    return CleanupResult(lead_name=lead_name, outcome=ERROR, error=error)


async def _archive(panel, settings: HarnessSettings) -> bool:
    button = await find_sole_visible(panel, "archive-button", settings.optional_probe_ms)
    if button is None:
        return False
    await button.click()
    return True


async def _delete(page, panel, settings: HarnessSettings) -> bool:
    button = await find_sole_visible(panel, "delete-button", settings.optional_probe_ms)
    if button is None:
        return False
    await button.click()
    # Confirmation dialogs render outside the record panel
    confirm = await find_sole_visible(page, "confirm-button", settings.optional_probe_ms)
    if confirm is not None:
        await confirm.click()
    return True


async def _demote(page, panel, settings: HarnessSettings) -> bool:
    edit = await find_sole_visible(panel, "edit-button", settings.optional_probe_ms)
    if edit is None:
        return False
    await edit.click()
    await page.wait_for_timeout(EDIT_SETTLE_MS)
    status = await find_sole_visible(panel, "status-field", settings.optional_probe_ms)
    if status is None:
        return False
    await status.click()
    # Select options are portalled to the page root
    lost = await find_sole_visible(page, "lost-option", settings.optional_probe_ms)
    if lost is None:
        return False
    await lost.click()
    save = await find_sole_visible(panel, "save-button", settings.optional_probe_ms)
    if save is None:
        raise CleanupError("Status set to Lost but no save button was found")
    await save.click()
    return True


async def remove_lead(page, lead_name: str, settings: HarnessSettings, verbose: bool = False) -> str:
    """Archive, else delete, else demote to Lost. Returns the outcome constant.

    Every control is looked up inside the opened record's panel and must match exactly
    once; anything less certain leaves the record alone as UNRESOLVED.
    """
    await goto(page, settings, LEADS_PATH, verbose=verbose)
    await settle(page, settings)

    card = await find_first_visible(page, text_candidates(lead_name), settings.cleanup_lookup_ms)
    if card is None:
        print(f"🧹 [CLEANUP] Lead '{lead_name}' not found - may have been already cleaned up")
        return NOT_FOUND
    await card.click()
    await settle(page, settings)

    try:
        panel = await find_sole_visible(page, record_panel_candidates(lead_name), settings.cleanup_lookup_ms)
        if panel is None:
            print(f"🧹 [CLEANUP] Opened '{lead_name}' but found no panel showing it; left as is")
            return UNRESOLVED
        if await _archive(panel, settings):
            print(f"🧹 [CLEANUP] Lead '{lead_name}' archived")
            return ARCHIVED
        if await _delete(page, panel, settings):
            print(f"🧹 [CLEANUP] Lead '{lead_name}' deleted")
            return DELETED
        if await _demote(page, panel, settings):
            print(f"🧹 [CLEANUP] Lead '{lead_name}' marked as Lost")
            return DEMOTED
    except AmbiguousElement as e:
        print(f"🧹 [CLEANUP] Not clicking for '{lead_name}': {e}; left as is")
        return UNRESOLVED
    print(f"🧹 [CLEANUP] No archive/delete/edit control for '{lead_name}'; left as is")
    return UNRESOLVED


async def cleanup_lead(page, lead_name: str, settings: HarnessSettings, verbose: bool = False) -> CleanupResult:
    if not lead_name.startswith(TEST_PREFIX):
        print(f"🧹 [CLEANUP] Refusing to touch '{lead_name}': missing {TEST_PREFIX} prefix")
        return CleanupResult(lead_name=lead_name, outcome=REFUSED, error=f"name lacks {TEST_PREFIX} prefix")
    print(f"🧹 [CLEANUP] Starting cleanup for lead: {lead_name}")
    return await run_guarded(
        lead_name,
        lambda: remove_lead(page, lead_name, settings, verbose=verbose),
        settings.cleanup_timeout_s,
    )
