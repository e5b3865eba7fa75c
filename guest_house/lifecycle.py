# guest_house/lifecycle.py
#
# -----------------------------------------------------------------------------
# Sign-in state machine
# -----------------------------------------------------------------------------
#   Started -> PhoneCheckPending | MagicLinkPending | Unverified
#           -> Resolved(user) | Rejected
#
# One sign-in attempt spans two requests: the browser starts it, then the
# provider redirect (or a magic-link click) finishes it. The only bridge
# between the two is the AuthSessionStore, keyed by check_id / session id.
#
# Every operation takes a BrowserSession (the signed cookie) and returns an
# Outcome; main.py turns the Outcome into an HTTP response. Expected
# rejections are Outcomes, not exceptions. ProviderError propagates.
# -----------------------------------------------------------------------------

import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, MutableMapping, Optional

from .audit import AuditLog
from .storage import (
    AuthSession,
    AuthSessionStore,
    Channel,
    magic_link_session,
    phone_check_session,
    unverified_session,
)
from .truid import TruIdClient
from .users import UserStore, user_from_phone_number

logger = logging.getLogger(__name__)

HOME_PATH = "/guest-house"
SIGN_IN_PATH = "/guest-house/auth/sign-in"
ONBOARDING_PATH = "/guest-house/onboarding"
MAGIC_LINK_PAGE_PATH = "/guest-house/magic-link"
CHECK_CALLBACK_PATH = "/guest-house/verification/handle-check"
LINK_CALLBACK_PATH = "/guest-house/verification/handle-link"

MSG_EXPIRED = "Your authentication session has expired"
MSG_NOT_ALLOWED = "You are not allowed to visit this page"
MSG_NO_PHONE = "You need to input a phone number"
MSG_BAD_PHONE = "Enter your phone number in international format, e.g. +447700900123"
MSG_NO_POSSESSION = "Cannot log you in: could not verify possession of your phone number"
MSG_NEED_EMAIL = "You need to provide an email to sign-in"
MSG_BAD_EMAIL = "That does not look like an email address"

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


class BrowserSession:
    """Typed view over the cookie-backed session dict (user_id, auth_session_id)."""

    USER_ID = "user_id"
    AUTH_SESSION_ID = "auth_session_id"

    def __init__(self, data: MutableMapping[str, Any]):
        self._data = data

    def _set(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    @property
    def user_id(self) -> Optional[str]:
        return self._data.get(self.USER_ID)

    @user_id.setter
    def user_id(self, value: Optional[str]) -> None:
        self._set(self.USER_ID, value)

    @property
    def auth_session_id(self) -> Optional[str]:
        return self._data.get(self.AUTH_SESSION_ID)

    @auth_session_id.setter
    def auth_session_id(self, value: Optional[str]) -> None:
        self._set(self.AUTH_SESSION_ID, value)

    def clear(self) -> None:
        self._data.clear()


@dataclass(frozen=True)
class Outcome:
    status_code: int = 200
    redirect_to: Optional[str] = None
    template: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    # the magic link is "sent" by handing it back to the caller
    magic_link: Optional[str] = None

    @classmethod
    def redirect(cls, url: str, **kw) -> "Outcome":
        return cls(status_code=303, redirect_to=url, **kw)

    @classmethod
    def render(cls, template: str, status_code: int = 200, **context) -> "Outcome":
        return cls(status_code=status_code, template=template, context=context)

    @classmethod
    def status(cls, status_code: int) -> "Outcome":
        return cls(status_code=status_code)


def normalize_phone_number(raw: Optional[str]) -> str:
    # drop spaces and common separators people type
    return re.sub(r"[\s\-().]", "", raw or "")


class SessionLifecycle:
    def __init__(
        self,
        users: UserStore,
        auth_sessions: AuthSessionStore,
        truid: TruIdClient,
        *,
        base_url: str,
        session_ttl_seconds: int,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.users = users
        self.auth_sessions = auth_sessions
        self.truid = truid
        self.base_url = base_url.rstrip("/")
        self.session_ttl_seconds = session_ttl_seconds
        self.audit = audit
        self._clock = clock

    # -- helpers ----------------------------------------------------------------
    def _now(self) -> int:
        return int(self._clock())

    def _record(self, event: str, **fields) -> None:
        if self.audit is None:
            return
        # state changes are already applied; a lost audit line must not undo them
        try:
            self.audit.record(event, now=self._now(), **fields)
        except OSError:
            logger.error(f"failed to write audit event {event}", exc_info=True)

    def _clean_up(self, browser: BrowserSession, sess: AuthSession) -> None:
        browser.auth_session_id = None
        self.auth_sessions.remove(sess)

    def _discard_bound_session(self, browser: BrowserSession) -> None:
        """Drop an unfinished attempt still bound to this browser."""
        session_id = browser.auth_session_id
        if not session_id:
            return
        with self.auth_sessions.locked(session_id):
            stale = self.auth_sessions.find_by_session_id(session_id)
            if stale is not None:
                self.auth_sessions.remove(stale)
                logger.debug(f"discarded stale auth session {session_id}")
        browser.auth_session_id = None

    def check_callback_url(self) -> str:
        return f"{self.base_url}{CHECK_CALLBACK_PATH}"

    def magic_link_url(self, link_code: str) -> str:
        return f"{self.base_url}{LINK_CALLBACK_PATH}?code={link_code}"

    # -- pages ------------------------------------------------------------------
    def home(self, browser: BrowserSession) -> Outcome:
        user = self.users.find_by_id(browser.user_id)
        if user is None:
            # stale or absent identity
            browser.clear()
        return Outcome.render("index.html", user=user)

    def sign_in_page(self, browser: BrowserSession) -> Outcome:
        if browser.user_id:
            return Outcome.redirect(HOME_PATH)
        return Outcome.render("sign-in.html")

    def sign_out(self, browser: BrowserSession) -> Outcome:
        self._discard_bound_session(browser)
        browser.clear()
        return Outcome.redirect(HOME_PATH)

    # -- sign-in ----------------------------------------------------------------
    def start_sign_in(self, browser: BrowserSession, phone_number: Optional[str], device_ip: str) -> Outcome:
        if browser.user_id:
            return Outcome.redirect(HOME_PATH)

        phone_number = normalize_phone_number(phone_number)
        if not phone_number:
            return Outcome.render("sign-in.html", error=MSG_NO_PHONE)
        if not E164_RE.match(phone_number):
            return Outcome.render("sign-in.html", error=MSG_BAD_PHONE, phone_number=phone_number)

        self._discard_bound_session(browser)

        user = self.users.find_by_phone_number(phone_number)
        coverage = self.truid.coverage.reachability_check(device_ip)
        now = self._now()
        magic_link = None

        if coverage.reachable:
            # always verify the phone number, for sign-in and sign-up alike
            check_id = self.truid.subscriber_check.create(phone_number, self.check_callback_url())
            sess = phone_check_session(phone_number, check_id, ttl_seconds=self.session_ttl_seconds, now=now)
            next_url = self.truid.check_redirect_url(check_id)
            logger.debug(f"verify phone number {phone_number} with check {check_id}")
        else:
            reason = coverage.reason.value if coverage.reason else "unreachable"
            logger.warning(f"unreachable session for ip {device_ip} and phone number {phone_number}: {reason}")

            if user is None:
                sess = unverified_session(phone_number, ttl_seconds=self.session_ttl_seconds, now=now)
                next_url = ONBOARDING_PATH
                logger.debug(f"onboard new user with phone number {phone_number}")
            elif user.email:
                sess = magic_link_session(
                    user.phone_number, user.email, ttl_seconds=self.session_ttl_seconds, now=now
                )
                magic_link = self.magic_link_url(sess.link_code)
                next_url = MAGIC_LINK_PAGE_PATH
                logger.info(f"sent email to {user.email} magic link: {magic_link}")
            else:
                # no SMS fallback: the sign-in fails
                logger.warning(f"rejected sign-in for phone number {phone_number}: no fallback email")
                self._record(
                    "sign_in_rejected",
                    phone_number=phone_number,
                    request_ip=device_ip,
                    reason="no_fallback_email",
                )
                return Outcome.render("sign-in.html", error=f"Cannot log you in: {reason}")

        self.auth_sessions.save(sess)
        browser.auth_session_id = sess.session_id
        self._record(
            "sign_in_started",
            session_id=sess.session_id,
            phone_number=phone_number,
            check_id=sess.check_id,
            channel=sess.channel.value,
            request_ip=device_ip,
        )
        return Outcome.redirect(next_url, magic_link=magic_link)

    # -- phone-check callback -----------------------------------------------------
    def handle_check(
        self,
        browser: BrowserSession,
        check_id: Optional[str],
        code: Optional[str],
        error: Optional[str],
    ) -> Outcome:
        if not check_id or not (code or error):
            return Outcome.status(400)

        found = self.auth_sessions.find_by_check_id(check_id)
        if found is None:
            logger.error(f"could not find an auth session for check {check_id}")
            return Outcome.status(410)

        with self.auth_sessions.locked(found.session_id):
            # may have been finished or discarded while we waited
            sess = self.auth_sessions.find_by_check_id(check_id)
            if sess is None or sess.channel != Channel.PHONE_CHECK:
                logger.error(f"auth session for check {check_id} is gone")
                return Outcome.status(410)
            return self._finish_check(browser, sess, code, error)

    def _finish_check(
        self,
        browser: BrowserSession,
        sess: AuthSession,
        code: Optional[str],
        error: Optional[str],
    ) -> Outcome:
        current = browser.auth_session_id
        if current != sess.session_id:
            self._clean_up(browser, sess)
            logger.error(f"auth session mismatch current={current} != check session={sess.session_id}")
            self._record("check_rejected", session_id=sess.session_id, check_id=sess.check_id, reason="session_mismatch")
            return Outcome.status(403)

        if sess.phone_number_verified:
            # same browser replaying the provider redirect; nothing left to verify
            logger.debug(f"check {sess.check_id} already verified, continue onboarding")
            return Outcome.redirect(ONBOARDING_PATH)

        if error:
            self._clean_up(browser, sess)
            logger.error(f"failed to verify session for phone number {sess.phone_number}: {error}")
            self._record(
                "check_rejected",
                session_id=sess.session_id,
                phone_number=sess.phone_number,
                check_id=sess.check_id,
                reason="provider_error",
                detail=str(error)[:200],
            )
            return Outcome.render("sign-in.html", error=f"Cannot log you in: {error}")

        result = self.truid.subscriber_check.complete(sess.check_id, code)

        if not result.match:
            self._clean_up(browser, sess)
            logger.warning(
                f"phone number {sess.phone_number} does not match user in session "
                f"(check={sess.check_id}, no_sim_change={result.no_sim_change})"
            )
            self._record(
                "check_rejected",
                session_id=sess.session_id,
                phone_number=sess.phone_number,
                check_id=sess.check_id,
                reason="no_match",
            )
            return Outcome.render("sign-in.html", error=MSG_NO_POSSESSION)

        user = self.users.find_by_phone_number(sess.phone_number)
        if user is not None:
            self._clean_up(browser, sess)
            browser.user_id = user.user_id
            logger.debug(f"found user for phone number {user.phone_number}")
            self._record(
                "signed_in",
                session_id=sess.session_id,
                user_id=user.user_id,
                check_id=sess.check_id,
                channel=sess.channel.value,
            )
            return Outcome.redirect(HOME_PATH)

        # SIM-change purge only runs when no user matched, so there is never a
        # record to purge here. Kept as observed; see DESIGN.md.
        if not result.no_sim_change:
            logger.debug(f"SIM has changed for phone number {sess.phone_number}: no user record to purge")

        sess.phone_number_verified = True
        self.auth_sessions.save(sess)
        self._record(
            "check_verified",
            session_id=sess.session_id,
            phone_number=sess.phone_number,
            check_id=sess.check_id,
            sim_changed=not result.no_sim_change,
        )
        return Outcome.redirect(ONBOARDING_PATH)

    # -- magic-link callback -------------------------------------------------------
    def handle_magic_link(self, browser: BrowserSession, code: Optional[str]) -> Outcome:
        if not code:
            return Outcome.status(400)

        found = self.auth_sessions.find_by_session_id(browser.auth_session_id)
        if found is None:
            return Outcome.render("error.html", error=MSG_EXPIRED)

        with self.auth_sessions.locked(found.session_id):
            sess = self.auth_sessions.find_by_session_id(found.session_id)
            if sess is None:
                return Outcome.render("error.html", error=MSG_EXPIRED)

            if sess.channel == Channel.PHONE_CHECK:
                logger.warning(f"rejected magic link for phone-check session {sess.session_id}")
                return Outcome.render("error.html", error=MSG_NOT_ALLOWED)

            if sess.link_code is None or not secrets.compare_digest(sess.link_code.encode(), code.encode()):
                self._clean_up(browser, sess)
                logger.warning(f"rejected magic link for phone number {sess.phone_number}: mismatched codes")
                self._record("link_rejected", session_id=sess.session_id, phone_number=sess.phone_number)
                return Outcome.render("error.html", error=MSG_EXPIRED)

            self._clean_up(browser, sess)

        user = self.users.find_by_phone_number(sess.phone_number)
        if user is None:
            logger.warning(f"magic link for phone number {sess.phone_number} but the user is gone")
            return Outcome.render("error.html", error=MSG_EXPIRED)

        browser.user_id = user.user_id
        logger.debug(f"found user for phone number {user.phone_number}")
        self._record("signed_in", session_id=sess.session_id, user_id=user.user_id, channel=sess.channel.value)
        return Outcome.redirect(HOME_PATH)

    # -- onboarding ---------------------------------------------------------------
    def onboarding_page(self, browser: BrowserSession) -> Outcome:
        if self.users.find_by_id(browser.user_id) is not None:
            # no need to onboard a signed-in user
            return Outcome.redirect(HOME_PATH)

        sess = self.auth_sessions.find_by_session_id(browser.auth_session_id)
        if sess is None:
            return Outcome.redirect(SIGN_IN_PATH)

        return Outcome.render("onboarding.html", can_skip=sess.phone_number_verified, pending=sess.is_pending)

    def finish_onboarding(self, browser: BrowserSession, email: Optional[str]) -> Outcome:
        if self.users.find_by_id(browser.user_id) is not None:
            return Outcome.redirect(HOME_PATH)

        found = self.auth_sessions.find_by_session_id(browser.auth_session_id)
        if found is None:
            return Outcome.redirect(SIGN_IN_PATH)

        with self.auth_sessions.locked(found.session_id):
            sess = self.auth_sessions.find_by_session_id(found.session_id)
            if sess is None:
                return Outcome.redirect(SIGN_IN_PATH)

            if sess.is_pending:
                logger.debug(f"rejected onboarding for phone number {sess.phone_number} with on-going verification")
                return Outcome.render("error.html", error=MSG_NOT_ALLOWED)

            email = (email or "").strip() or None
            if email is None and not sess.phone_number_verified:
                return Outcome.render("onboarding.html", error=MSG_NEED_EMAIL, can_skip=False)
            if email is not None and "@" not in email:
                return Outcome.render("onboarding.html", error=MSG_BAD_EMAIL, can_skip=sess.phone_number_verified)

            new_user = user_from_phone_number(sess.phone_number, email)
            self.users.save(new_user)
            self._clean_up(browser, sess)

        browser.user_id = new_user.user_id
        logger.debug(f"created new user for phone number {new_user.phone_number}")
        self._record(
            "user_onboarded",
            session_id=sess.session_id,
            user_id=new_user.user_id,
            phone_number=new_user.phone_number,
            channel=sess.channel.value,
            phone_verified=sess.phone_number_verified,
        )
        return Outcome.redirect(HOME_PATH)
