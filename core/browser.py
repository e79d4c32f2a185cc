"""
OTP Pipeline — Browser Registration Gateway

Playwright-driven implementation of RegistrationGateway for the
Treasury web app. Each call launches its own browser and closes it
afterwards; nothing is shared between calls.

Form fields are located through ordered selector lists; the first
visible match wins. Success is detected by probing for OTP prompts or
a navigation away from the form, failure by error banners or timeout.

Requires: pip install playwright && playwright install chromium
"""

from __future__ import annotations

import logging
import time
from typing import Any

from core.exceptions import LoginError, RegistrationError
from core.phone import normalize
from core.registration import RegistrationData

logger = logging.getLogger("otp_pipeline.browser")

LAUNCH_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-extensions", "--disable-gpu"]

NAME_SELECTORS = [
    'input[placeholder*="Nama Lengkap" i]',
    'input[name*="name" i]',
    'input[id*="name" i]',
    'input[name*="fullname" i]',
    'input[placeholder*="nama" i]',
]
PHONE_SELECTORS = [
    'input[type="tel"]',
    'input[placeholder*="handphone" i]',
    'input[placeholder*="nomor" i]',
    'input[name*="phone" i]',
    'input[name*="hp" i]',
    'input[placeholder*="telepon" i]',
]
EMAIL_SELECTORS = [
    'input[type="email"]',
    'input[placeholder*="Email" i]',
    'input[name*="email" i]',
    'input[id*="email" i]',
]
PIN_SELECTORS = [
    'input[placeholder*="PIN" i]',
    'input[name*="pin" i]',
    'input[id*="pin" i]',
]
ANSWER_SELECTORS = [
    'input[placeholder*="Jawaban" i]',
    'input[name*="answer" i]',
    'input[name*="jawaban" i]',
    'input[id*="answer" i]',
]
SUBMIT_SELECTORS = [
    'button[type="submit"]',
    'button:has-text("Buat Akun")',
    'button:has-text("Daftar")',
    'button.btn-login',
    '.btn-base:has-text("Daftar")',
    'form button',
    '.btn-primary',
    '.btn-submit',
]
REGISTER_SUCCESS = [
    "text=berhasil",
    "text=sukses",
    "text=OTP",
    "text=verifikasi",
    'input[autocomplete="one-time-code"]',
    'input[maxlength="1"]',
    "text=kode verifikasi",
    "text=dikirim",
    ".success",
    ".alert-success",
]
LOGIN_SUCCESS = [
    ('input[autocomplete="one-time-code"]', "OTP input (single)"),
    ('input[maxlength="1"]', "OTP input (multiple)"),
    ('input[maxlength="6"]', "OTP input (6 digit)"),
    ('[role="dialog"]', "modal dialog"),
    (".ant-modal", "ant modal"),
    (".modal", "generic modal"),
    ("text=OTP", "text OTP"),
    ("text=kode", "text kode"),
    ("text=verifikasi", "text verifikasi"),
    ("text=Masukkan kode", "text masukkan kode"),
    (".otp-input", "OTP input class"),
    ('[placeholder*="kode" i]', "placeholder kode"),
    ('[placeholder*="OTP" i]', "placeholder OTP"),
]
LOGIN_ERRORS = [
    ("text=salah", "text salah"),
    ("text=tidak valid", "text tidak valid"),
    ("text=gagal", "text gagal"),
    (".error", "error class"),
    (".alert-danger", "alert danger"),
    ('[class*="error"]', "error in class name"),
]
LOADING_OVERLAY = ".loading-2.fullscreen.overlay.show"

# JS: set a readonly date input and fire the events the app listens for
_SET_BIRTHDATE_JS = """
(isoDate) => {
  const el = document.querySelector('#birthday');
  if (!el) return;
  el.removeAttribute('readonly');
  const setter = Object.getOwnPropertyDescriptor(Object.getPrototypeOf(el), 'value')?.set;
  if (setter) setter.call(el, isoDate); else el.value = isoDate;
  el.setAttribute('title', isoDate);
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""


def _is_visible(locator, timeout_ms: int) -> bool:
    from playwright.sync_api import Error as PlaywrightError

    try:
        locator.wait_for(state="visible", timeout=timeout_ms)
        return True
    except PlaywrightError:
        return False


class PlaywrightRegistrationGateway:
    """
    Example:
        gateway = PlaywrightRegistrationGateway(
            register_url="https://web.treasury.id/register",
            login_url="https://www.treasury.id/login",
        )
        gateway.register(data)
        gateway.login("081122334455", "secret")
    """

    def __init__(
        self,
        register_url: str,
        login_url: str,
        headless: bool = True,
        slow_mo: int = 0,
        login_wait_seconds: float = 15.0,
        click_attempts: int = 3,
        screenshot_dir: str | None = None,
        playwright_factory=None,
    ):
        self.register_url = register_url
        self.login_url = login_url
        self.headless = headless
        self.slow_mo = slow_mo
        self.login_wait_seconds = login_wait_seconds
        self.click_attempts = click_attempts
        self.screenshot_dir = screenshot_dir
        # sync_playwright by default; injectable for tests
        self.playwright_factory = playwright_factory

    @classmethod
    def from_settings(cls, settings) -> PlaywrightRegistrationGateway:
        return cls(
            register_url=settings.target.register_url,
            login_url=settings.target.login_url,
            headless=settings.runtime.headless,
            slow_mo=settings.runtime.slow_mo,
        )

    # ─── Session plumbing ────────────────────────────────────────────

    def _run(self, fn, error_cls):
        """Open a fresh browser, run fn(page), always close."""
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        factory = self.playwright_factory or sync_playwright
        try:
            with factory() as pw:
                browser = pw.chromium.launch(
                    headless=self.headless, args=LAUNCH_ARGS, slow_mo=self.slow_mo,
                )
                try:
                    context = browser.new_context()
                    try:
                        return fn(context.new_page())
                    finally:
                        context.close()
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise error_cls(f"browser error: {e}") from e

    @staticmethod
    def _fill_first(page, selectors: list[str], value: str) -> bool:
        for sel in selectors:
            el = page.locator(sel).first
            if _is_visible(el, 2000):
                el.fill("")
                page.wait_for_timeout(200)
                el.fill(value)
                return True
        return False

    @staticmethod
    def _first_visible(page, probes, timeout_ms: int = 1000) -> str | None:
        for probe in probes:
            sel, label = probe if isinstance(probe, tuple) else (probe, probe)
            if _is_visible(page.locator(sel).first, timeout_ms):
                return label
        return None

    # ─── register ────────────────────────────────────────────────────

    def register(self, data: RegistrationData) -> None:
        self._run(lambda page: self._register(page, data), RegistrationError)

    def _register(self, page, data: RegistrationData) -> None:
        page.goto(self.register_url, wait_until="domcontentloaded", timeout=60000)
        page.wait_for_timeout(1000)

        if not self._fill_first(page, NAME_SELECTORS, data.fullname):
            raise RegistrationError("could not fill name field")
        if not self._fill_first(page, PHONE_SELECTORS, data.phone):
            raise RegistrationError("could not fill phone field")
        if not self._fill_first(page, EMAIL_SELECTORS, data.email):
            raise RegistrationError("could not fill email field")

        birthday = page.locator("#birthday").first
        if _is_visible(birthday, 2000):
            page.evaluate(_SET_BIRTHDATE_JS, data.birthdate)
            page.wait_for_timeout(300)
        else:
            logger.warning("Birthdate field not found; continuing without it")

        for field in page.locator('input[type="password"]').all():
            if field.is_visible():
                field.fill(data.password)

        for sel in PIN_SELECTORS:
            for field in page.locator(sel).all():
                if field.is_visible():
                    field.fill(data.pin)

        self._pick_security_question(page)
        self._fill_first(page, ANSWER_SELECTORS, data.security_answer)

        for box in page.locator('input[type="checkbox"]').all():
            if box.is_visible() and not box.is_checked():
                box.click()

        submitted = False
        for sel in SUBMIT_SELECTORS:
            btn = page.locator(sel).first
            if _is_visible(btn, 2000):
                btn.click()
                submitted = True
                break
        if not submitted:
            raise RegistrationError("submit button not found")

        page.wait_for_timeout(3000)
        indicator = self._first_visible(page, REGISTER_SUCCESS, timeout_ms=1500)
        if indicator is None and "register" in page.url:
            raise RegistrationError("no success indicator after submit")
        logger.info("Registration succeeded for %s via %s",
                    data.phone, indicator or "URL change")

    @staticmethod
    def _pick_security_question(page) -> None:
        for select in page.locator("select").all():
            if not select.is_visible():
                continue
            labels = [o.text_content() or "" for o in select.locator("option").all()]
            for label in labels:
                if "artis favorit" in label:
                    select.select_option(label=label)
                    return
            if len(labels) > 1:
                select.select_option(index=1)
            return

    # ─── login ───────────────────────────────────────────────────────

    def login(self, phone: str, password: str) -> None:
        self._run(lambda page: self._login(page, phone, password), LoginError)

    def _login(self, page, phone: str, password: str) -> None:
        from playwright.sync_api import Error as PlaywrightError

        local = normalize(phone) or phone
        page.goto(self.login_url, wait_until="domcontentloaded", timeout=45000)
        page.wait_for_timeout(1000)

        overlay = page.locator(LOADING_OVERLAY).first
        try:
            overlay.wait_for(state="hidden", timeout=10000)
        except PlaywrightError:
            logger.debug("Loading overlay still present, continuing")

        try:
            page.wait_for_selector("#username", timeout=10000)
            page.locator("#username").fill(local)
            page.locator("#password").fill(password)
        except PlaywrightError as e:
            raise LoginError(f"could not fill login form: {e}") from e

        clicked = False
        for attempt in range(1, self.click_attempts + 1):
            try:
                page.locator(".btn-login").click(force=True, timeout=15000)
                clicked = True
                break
            except PlaywrightError as e:
                logger.warning("Login click attempt %d/%d failed: %s",
                               attempt, self.click_attempts, str(e)[:100])
                page.wait_for_timeout(2000)
        if not clicked:
            raise LoginError(f"login button click failed after {self.click_attempts} attempts")

        deadline = time.time() + self.login_wait_seconds
        while time.time() < deadline:
            found = self._first_visible(page, LOGIN_SUCCESS)
            if found:
                logger.info("Login succeeded for %s via %s", local, found)
                return
            error = self._first_visible(page, LOGIN_ERRORS)
            if error:
                raise LoginError(f"login rejected: {error}")
            if page.url != self.login_url and "/login" not in page.url:
                logger.info("Login succeeded for %s via URL change", local)
                return
            page.wait_for_timeout(1000)

        self._screenshot(page, local)
        raise LoginError(f"no success indicator after {self.login_wait_seconds:.0f}s")

    def _screenshot(self, page: Any, phone: str) -> None:
        if not self.screenshot_dir:
            return
        from playwright.sync_api import Error as PlaywrightError

        path = f"{self.screenshot_dir}/debug_login_{phone}_{int(time.time() * 1000)}.png"
        try:
            page.screenshot(path=path, full_page=True)
            logger.info("Saved login screenshot: %s", path)
        except PlaywrightError as e:
            logger.debug("Screenshot failed: %s", e)
