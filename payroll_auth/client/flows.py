# payroll_auth/client/flows.py
"""
Client-side MFA flows as explicit state machines.

Each flow carries an enum-tagged ``state`` and a declared transition table.
Calling an action that is not valid from the current state raises
``InvalidTransition``; a verification the server turns down is not an
exception but a ``FlowResult`` with ``ok=False``, so the caller can re-prompt
without losing its place.
"""
import enum
from dataclasses import dataclass
from typing import ClassVar, Dict, FrozenSet, List, Optional, Tuple

from loguru import logger

from payroll_auth.client.api import APIResult, AuthAPIClient, ErrorKind
from payroll_auth.client.credential_store import CredentialStore, PendingTicket
from payroll_auth.models.user import MFAType
from payroll_auth.schemas.mfa import MFAMethod
from payroll_auth.schemas.user import AccountSnapshot


class InvalidTransition(Exception):
    def __init__(self, flow: str, action: str, state: enum.Enum):
        self.flow = flow
        self.action = action
        self.state = state
        super().__init__(f"{flow}: '{action}' is not allowed in state '{state.value}'")


@dataclass
class FlowResult:
    ok: bool
    state: enum.Enum
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None


class StateMachine:
    initial_state: ClassVar[enum.Enum]
    transitions: ClassVar[Dict[enum.Enum, FrozenSet[enum.Enum]]]

    def __init__(self) -> None:
        self.state = self.initial_state

    def _require(self, action: str, *allowed: enum.Enum) -> None:
        if self.state not in allowed:
            raise InvalidTransition(type(self).__name__, action, self.state)

    def _move(self, target: enum.Enum) -> None:
        if target not in self.transitions.get(self.state, frozenset()):
            raise InvalidTransition(type(self).__name__, f"-> {target.value}", self.state)
        logger.debug(f"{type(self).__name__}: {self.state.value} -> {target.value}")
        self.state = target

    def _result(self, api_result: Optional[APIResult] = None) -> FlowResult:
        if api_result is None or api_result.ok:
            return FlowResult(ok=True, state=self.state)
        return FlowResult(
            ok=False, state=self.state, error=api_result.error, detail=api_result.detail
        )


# --- Login challenge ---
class LoginState(str, enum.Enum):
    IDLE = "idle"
    PASSWORD_VERIFIED = "password_verified"
    MFA_REQUIRED = "mfa_required"
    VERIFIED = "verified"
    FAILED = "failed"


class LoginFlow(StateMachine):
    """
    Transitions::

        idle              → password_verified  (submit_password)
        idle              → mfa_required       (resume, cached ticket)
        password_verified → verified           (no MFA on the account)
        password_verified → mfa_required       (ticket issued)
        mfa_required      → verified           (verify)
        mfa_required      → failed             (ticket expired)
        mfa_required      → idle               (cancel)
        failed            → idle               (cancel)
    """

    initial_state = LoginState.IDLE
    transitions = {
        LoginState.IDLE: frozenset({LoginState.PASSWORD_VERIFIED, LoginState.MFA_REQUIRED}),
        LoginState.PASSWORD_VERIFIED: frozenset({LoginState.VERIFIED, LoginState.MFA_REQUIRED}),
        LoginState.MFA_REQUIRED: frozenset({LoginState.VERIFIED, LoginState.FAILED, LoginState.IDLE}),
        LoginState.FAILED: frozenset({LoginState.IDLE}),
        LoginState.VERIFIED: frozenset(),
    }

    def __init__(self, api: AuthAPIClient):
        super().__init__()
        self.api = api
        self.credentials: CredentialStore = api.credentials
        self.pending: Optional[PendingTicket] = None

    @property
    def mfa_type(self) -> Optional[MFAType]:
        return self.pending.mfa_type if self.pending else None

    async def submit_password(self, email: str, password: str) -> FlowResult:
        self._require("submit_password", LoginState.IDLE)
        result = await self.api.login(email, password)
        if not result.ok:
            return self._result(result)

        self._move(LoginState.PASSWORD_VERIFIED)
        data = result.data
        if data.get("requireMFA"):
            self.pending = self.credentials.save_ticket(data["tempTicket"], MFAType(data["mfaType"]))
            self._move(LoginState.MFA_REQUIRED)
            logger.info(f"Second factor ({self.pending.mfa_type.value}) required for {email}")
        else:
            self.credentials.save(data["token"], AccountSnapshot.model_validate(data["user"]))
            self._move(LoginState.VERIFIED)
        return self._result()

    def resume(self) -> bool:
        """Picks up a challenge cached before a restart; False when none is left."""
        self._require("resume", LoginState.IDLE)
        pending = self.credentials.load_ticket()
        if pending is None:
            return False
        self.pending = pending
        self._move(LoginState.MFA_REQUIRED)
        return True

    def _default_method(self) -> MFAMethod:
        return MFAMethod.EMAIL if self.mfa_type == MFAType.EMAIL else MFAMethod.TOTP

    def _expire(self) -> None:
        self.credentials.clear_ticket()
        self.pending = None
        self._move(LoginState.FAILED)

    async def send_email_code(self) -> FlowResult:
        self._require("send_email_code", LoginState.MFA_REQUIRED)
        if self.pending is None or self.pending.mfa_type != MFAType.EMAIL:
            raise InvalidTransition(type(self).__name__, "send_email_code", self.state)
        result = await self.api.send_login_code(self.pending.ticket)
        if result.error == ErrorKind.TICKET_EXPIRED:
            self._expire()
        return self._result(result)

    async def verify(self, code: str, method: Optional[MFAMethod] = None) -> FlowResult:
        self._require("verify", LoginState.MFA_REQUIRED)
        if self.pending is None:
            raise InvalidTransition(type(self).__name__, "verify", self.state)
        method = MFAMethod(method) if method else self._default_method()
        result = await self.api.verify_mfa(self.pending.ticket, code.strip(), method.value)
        if result.ok:
            self.credentials.save(
                result.data["token"], AccountSnapshot.model_validate(result.data["user"])
            )
            self.pending = None
            self._move(LoginState.VERIFIED)
        elif result.error == ErrorKind.TICKET_EXPIRED:
            self._expire()
        return self._result(result)

    def cancel(self) -> None:
        self._require("cancel", LoginState.MFA_REQUIRED, LoginState.FAILED)
        self.credentials.clear_ticket()
        self.pending = None
        self._move(LoginState.IDLE)


# --- Authenticator app enrollment ---
class TotpEnrollmentState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_CODE = "awaiting_first_code"
    ENROLLED = "enrolled"


class TotpEnrollmentFlow(StateMachine):
    """
    Transitions::

        idle                → awaiting_first_code  (begin)
        awaiting_first_code → enrolled             (confirm)
        awaiting_first_code → idle                 (cancel, or setup expired)

    The secret, QR code and backup codes live only on this object.
    """

    initial_state = TotpEnrollmentState.IDLE
    transitions = {
        TotpEnrollmentState.IDLE: frozenset({TotpEnrollmentState.AWAITING_FIRST_CODE}),
        TotpEnrollmentState.AWAITING_FIRST_CODE: frozenset(
            {TotpEnrollmentState.ENROLLED, TotpEnrollmentState.IDLE}
        ),
        TotpEnrollmentState.ENROLLED: frozenset(),
    }

    def __init__(self, api: AuthAPIClient):
        super().__init__()
        self.api = api
        self.secret: Optional[str] = None
        self.qr_code: Optional[str] = None
        self.otp_uri: Optional[str] = None
        self._backup_codes: List[str] = []

    @property
    def backup_codes(self) -> Tuple[str, ...]:
        return tuple(self._backup_codes)

    def _forget(self) -> None:
        self.secret = self.qr_code = self.otp_uri = None
        self._backup_codes = []

    async def begin(self) -> FlowResult:
        self._require("begin", TotpEnrollmentState.IDLE)
        result = await self.api.setup_totp()
        if result.ok:
            self.secret = result.data["secret"]
            self.qr_code = result.data["qrCode"]
            self.otp_uri = result.data["otpUri"]
            self._backup_codes = list(result.data["backupCodes"])
            self._move(TotpEnrollmentState.AWAITING_FIRST_CODE)
        return self._result(result)

    async def confirm(self, code: str, use_backup_code: bool = False) -> FlowResult:
        self._require("confirm", TotpEnrollmentState.AWAITING_FIRST_CODE)
        result = await self.api.verify_totp_setup(code.strip(), is_backup_code=use_backup_code)
        if result.ok:
            self.api.credentials.update_user(AccountSnapshot.model_validate(result.data["user"]))
            self.secret = self.qr_code = self.otp_uri = None
            self._move(TotpEnrollmentState.ENROLLED)
        elif result.error == ErrorKind.ENROLLMENT_EXPIRED:
            self._forget()
            self._move(TotpEnrollmentState.IDLE)
        return self._result(result)

    def cancel(self) -> None:
        """Abandons the setup; the server has committed nothing yet."""
        self._require("cancel", TotpEnrollmentState.AWAITING_FIRST_CODE)
        self._forget()
        self._move(TotpEnrollmentState.IDLE)

    def acknowledge_backup_codes(self) -> None:
        self._require("acknowledge_backup_codes", TotpEnrollmentState.ENROLLED)
        self._backup_codes = []


# --- Email code enrollment ---
class EmailEnrollmentState(str, enum.Enum):
    IDLE = "idle"
    INTENT_CONFIRMED = "intent_confirmed"
    CODE_SENT = "code_sent"
    ENROLLED = "enrolled"


class EmailEnrollmentFlow(StateMachine):
    """
    Transitions::

        idle             → intent_confirmed  (confirm_intent, no side effect)
        intent_confirmed → code_sent         (send_code)
        code_sent        → code_sent         (send_code again, old code dies)
        code_sent        → enrolled          (confirm)
        intent_confirmed → idle              (cancel)
        code_sent        → idle              (cancel)
    """

    initial_state = EmailEnrollmentState.IDLE
    transitions = {
        EmailEnrollmentState.IDLE: frozenset({EmailEnrollmentState.INTENT_CONFIRMED}),
        EmailEnrollmentState.INTENT_CONFIRMED: frozenset(
            {EmailEnrollmentState.CODE_SENT, EmailEnrollmentState.IDLE}
        ),
        EmailEnrollmentState.CODE_SENT: frozenset(
            {EmailEnrollmentState.CODE_SENT, EmailEnrollmentState.ENROLLED, EmailEnrollmentState.IDLE}
        ),
        EmailEnrollmentState.ENROLLED: frozenset(),
    }

    def __init__(self, api: AuthAPIClient):
        super().__init__()
        self.api = api
        # Set after CodeExpired: only a resend can help
        self.needs_resend = False

    def confirm_intent(self) -> None:
        self._require("confirm_intent", EmailEnrollmentState.IDLE)
        self._move(EmailEnrollmentState.INTENT_CONFIRMED)

    async def send_code(self) -> FlowResult:
        self._require("send_code", EmailEnrollmentState.INTENT_CONFIRMED, EmailEnrollmentState.CODE_SENT)
        result = await self.api.setup_email()
        if result.ok:
            self.needs_resend = False
            self._move(EmailEnrollmentState.CODE_SENT)
        return self._result(result)

    async def confirm(self, code: str) -> FlowResult:
        self._require("confirm", EmailEnrollmentState.CODE_SENT)
        result = await self.api.verify_email_setup(code.strip())
        if result.ok:
            self.api.credentials.update_user(AccountSnapshot.model_validate(result.data["user"]))
            self._move(EmailEnrollmentState.ENROLLED)
        elif result.error in (ErrorKind.CODE_EXPIRED, ErrorKind.RATE_LIMITED):
            self.needs_resend = True
        return self._result(result)

    def cancel(self) -> None:
        self._require("cancel", EmailEnrollmentState.INTENT_CONFIRMED, EmailEnrollmentState.CODE_SENT)
        self.needs_resend = False
        self._move(EmailEnrollmentState.IDLE)


# --- Backup codes ---
class BackupCodesState(str, enum.Enum):
    IDLE = "idle"
    DISPLAYING = "displaying"


class BackupCodesFlow(StateMachine):
    """Regenerates the batch; the new codes are held here until acknowledged."""

    initial_state = BackupCodesState.IDLE
    transitions = {
        BackupCodesState.IDLE: frozenset({BackupCodesState.DISPLAYING}),
        BackupCodesState.DISPLAYING: frozenset({BackupCodesState.IDLE}),
    }

    def __init__(self, api: AuthAPIClient):
        super().__init__()
        self.api = api
        self._codes: List[str] = []

    @property
    def codes(self) -> Tuple[str, ...]:
        return tuple(self._codes)

    async def regenerate(self) -> FlowResult:
        self._require("regenerate", BackupCodesState.IDLE)
        result = await self.api.regenerate_backup_codes()
        if result.ok:
            self._codes = list(result.data["backupCodes"])
            self._move(BackupCodesState.DISPLAYING)
        return self._result(result)

    def acknowledge(self) -> None:
        self._require("acknowledge", BackupCodesState.DISPLAYING)
        self._codes = []
        self._move(BackupCodesState.IDLE)


# --- Disable ---
class DisableState(str, enum.Enum):
    IDLE = "idle"
    DISABLED = "disabled"


class DisableFlow(StateMachine):
    initial_state = DisableState.IDLE
    transitions = {
        DisableState.IDLE: frozenset({DisableState.DISABLED}),
        DisableState.DISABLED: frozenset(),
    }

    def __init__(self, api: AuthAPIClient):
        super().__init__()
        self.api = api

    async def disable(self, password: str) -> FlowResult:
        self._require("disable", DisableState.IDLE)
        result = await self.api.disable_mfa(password)
        if result.ok:
            self.api.credentials.update_user(AccountSnapshot.model_validate(result.data["user"]))
            self._move(DisableState.DISABLED)
        return self._result(result)
