import asyncio
import json
import re
import urllib.parse
from pathlib import Path

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from errors import ConfigurationError, HarnessError
from scenarios import ScenarioContext, ScenarioState
from session import collect_diagnostics
from settings import HarnessSettings, resolve_credential


def host_allowed(url: str, base_host: str) -> bool:
    try:
        host = urllib.parse.urlparse(url).hostname or ""
    except ValueError:
        return False
    if not host:
        # about:blank, data: and relative URLs stay inside the page
        return True
    return host == base_host or host.endswith("." + base_host)


def select_scenarios(scenarios: list, settings: HarnessSettings, names: list[str] | None = None) -> list:
    """Apply the focus marker and name/group filters, preserving declaration order."""
    focused = [s for s in scenarios if s.focus]
    if focused and settings.ci:
        raise ConfigurationError(
            "focus=True left in source on: " + ", ".join(s.name for s in focused)
        )
    pool = focused or list(scenarios)
    if names:
        wanted = [n.lower() for n in names]
        pool = [s for s in pool if any(n == s.group or n in s.name.lower() for n in wanted)]
    if not pool:
        raise ConfigurationError(f"No scenarios match {names}")
    return pool


def preflight(scenarios: list, environ=None) -> None:
    """Resolve every credential the selected scenarios need before a browser is launched."""
    missing = []
    seen = set()
    for sc in scenarios:
        for role in sc.roles:
            if role in seen:
                continue
            seen.add(role)
            try:
                resolve_credential(role, environ)
            except ConfigurationError as e:
                missing.append(str(e))
    if missing:
        raise ConfigurationError("; ".join(missing))


def sanitize_for_filename(text: str) -> str:
    text = re.sub(r'[^\w\s-]', '', text)
    text = re.sub(r'[-\s]+', '_', text)
    return text.strip('_').lower()[:100]


def artifact_path(artifacts_dir: Path, scenario_name: str, attempt: int, kind: str, extension: str) -> Path:
    slug = sanitize_for_filename(scenario_name)
    return artifacts_dir / f"{slug}_attempt{attempt + 1}_{kind}.{extension}"


async def install_navigation_guard(context, page, base_host: str, verbose: bool = False) -> set:
    """Abort foreign-host navigations and close foreign popups. Returns the set of pending popup tasks."""
    async def route_guard(route, request):
        if request.resource_type == "document" and request.is_navigation_request():
            if not host_allowed(request.url, base_host):
                if verbose:
                    print(f"⛔ Blocking navigation: {request.url}")
                await route.abort()
                return
        await route.continue_()

    await context.route("**/*", route_guard)

    async def on_popup(popup_page):
        try:
            await popup_page.wait_for_load_state("domcontentloaded", timeout=5000)
        except PlaywrightError:
            pass
        if not host_allowed(popup_page.url, base_host):
            if verbose:
                print(f"⛔ Closing popup: {popup_page.url}")
            await popup_page.close()

    popup_tasks: set = set()

    def popup_done(task):
        popup_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            print(f"⚠️ Popup guard failed: {type(task.exception()).__name__}: {task.exception()}")

    def on_popup_event(popup_page):
        task = asyncio.create_task(on_popup(popup_page))
        popup_tasks.add(task)
        task.add_done_callback(popup_done)

    page.on("popup", on_popup_event)
    return popup_tasks


async def run_scenario(browser, sc, settings: HarnessSettings, artifacts_dir: Path, attempt: int = 0, verbose: bool = False) -> dict:
    """One attempt: fresh context, body under the scenario timeout, then cleanup hooks unconditionally."""
    video_dir = artifacts_dir / "video"
    context_args = {"base_url": settings.base_url, "viewport": settings.viewport}
    if settings.retain_video_on_failure:
        context_args["record_video_dir"] = str(video_dir)
    context = await browser.new_context(**context_args)
    video = None
    popup_tasks: set = set()
    try:
        context.set_default_timeout(settings.action_timeout_ms)
        context.set_default_navigation_timeout(settings.navigation_timeout_ms)
        tracing = settings.trace_on_first_retry and attempt > 0
        if tracing:
            await context.tracing.start(screenshots=True, snapshots=True)

        page = await context.new_page()
        video = page.video
        popup_tasks = await install_navigation_guard(context, page, settings.base_host, verbose=verbose)
        console_lines: list[str] = []
        page.on("console", lambda msg: console_lines.append(f"[{msg.type}] {msg.text}"))

        ctx = ScenarioContext(name=sc.name, page=page, settings=settings, browser_context=context, verbose=verbose)
        timeout_s = sc.timeout_s or settings.test_timeout_s
        status, error, diagnostics = "passed", "", {}
        fatal = None
        if verbose:
            print(f"🏃 {sc.name} (attempt {attempt + 1})")
        try:
            await asyncio.wait_for(sc.func(ctx), timeout=timeout_s)
        except ConfigurationError as e:
            status, error, fatal = "failed", str(e), e
        except asyncio.TimeoutError:
            status, error = "failed", f"Scenario exceeded {timeout_s}s and was aborted"
        except HarnessError as e:
            status, error, diagnostics = "failed", str(e), e.diagnostics
        except Exception as e:
            status, error = "failed", f"{type(e).__name__}: {e}"

        if status == "failed":
            ctx.transition(ScenarioState.FAILED)
        await ctx.run_cleanups()
        if status == "passed":
            ctx.transition(ScenarioState.DONE)

        result = {
            "name": sc.name,
            "group": sc.group,
            "status": status,
            "attempt": attempt + 1,
            "error": error,
            "diagnostics": diagnostics,
            "screenshot": "",
            "trace": "",
            "video": "",
            "console_log": "",
            "transitions": [f"{a} -> {b}" for a, b in ctx.transitions],
            "observations": ctx.observations,
            "cleanup": [r.to_dict() for r in ctx.cleanup_results],
        }

        if status == "failed":
            current_url = ""
            try:
                current_url = ctx.page.url
            except PlaywrightError:
                pass
            print(f"✖ Test failed: {sc.name} — {error} (url={current_url})")
            artifacts_dir.mkdir(parents=True, exist_ok=True)
            if not ctx.page.is_closed():
                if not diagnostics:
                    result["diagnostics"] = await collect_diagnostics(ctx.page)
                if settings.screenshot_on_failure:
                    shot = artifact_path(artifacts_dir, sc.name, attempt, "failure", "png")
                    try:
                        await ctx.page.screenshot(path=str(shot), full_page=True)
                        result["screenshot"] = str(shot)
                    except PlaywrightError as e:
                        print(f"⚠️ Could not save failure screenshot: {e}")
            log_path = artifact_path(artifacts_dir, sc.name, attempt, "console", "log")
            log_path.write_text("\n".join(console_lines), encoding="utf-8")
            result["console_log"] = str(log_path)
            diag_path = artifact_path(artifacts_dir, sc.name, attempt, "diagnostics", "json")
            diag_path.write_text(json.dumps(result["diagnostics"], indent=2, ensure_ascii=False, default=str), encoding="utf-8")

        if tracing:
            if status == "failed":
                trace_path = artifact_path(artifacts_dir, sc.name, attempt, "trace", "zip")
                await context.tracing.stop(path=str(trace_path))
                result["trace"] = str(trace_path)
            else:
                await context.tracing.stop()
    finally:
        for task in list(popup_tasks):
            task.cancel()
        await context.close()

    if video is not None:
        if status == "failed":
            result["video"] = str(await video.path())
        else:
            await video.delete()

    if fatal is not None:
        raise fatal
    return result


async def run_with_retries(browser, sc, settings: HarnessSettings, artifacts_dir: Path, verbose: bool = False) -> dict:
    attempts = settings.retries + 1
    result = {}
    for attempt in range(attempts):
        result = await run_scenario(browser, sc, settings, artifacts_dir, attempt=attempt, verbose=verbose)
        result["attempts"] = attempt + 1
        if result["status"] == "passed":
            break
        if attempt + 1 < attempts:
            print(f"↻ Retrying {sc.name} ({attempt + 2}/{attempts})")
    return result


async def run_test_suite(settings: HarnessSettings, scenarios: list, run_dir: Path, headless: bool = True, verbose: bool = False, names: list[str] | None = None) -> dict:
    """Run scenarios one at a time, in declaration order, on a single browser."""
    selected = select_scenarios(scenarios, settings, names)
    preflight(selected)
    artifacts_dir = run_dir / "artifacts"

    results = []
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        try:
            for sc in selected:
                result = await run_with_retries(browser, sc, settings, artifacts_dir, verbose=verbose)
                results.append(result)
                if result["status"] == "passed":
                    print(f"✓ Passed: {sc.name}")
                else:
                    err = result["error"]
                    err_excerpt = err if len(err) < 300 else (err[:297] + "...")
                    print(f"✖ Failed: {sc.name} — {err_excerpt}")
                for cleanup in result["cleanup"]:
                    if not cleanup["ok"]:
                        print(f"⚠️ Cleanup for '{cleanup['lead_name']}' ended as {cleanup['outcome']}; check the leads list")
        finally:
            await browser.close()
    return {"tests": results}
