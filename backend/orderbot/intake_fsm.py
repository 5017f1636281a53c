# 📂 backend/orderbot/intake_fsm.py — анкета клиента (Intake Form State Machine)
# -----------------------------------------------------------------------------
# Что делает:
#   • Ведёт пошаговый диалог регистрации клиента (15 шагов) поверх Session Store:
#       NONE → NAME → MIDDLE_NAME (необяз.) → LAST_NAME → PHONE → EMAIL → GENDER →
#       DOB → ADDRESS → APARTMENT (необяз.) → CITY → STATE → POSTAL →
#       PASSWORD_OPTION → PASSWORD (необяз.) → SAVE
#   • EDITING_FIELD — правка одного поля существующего профиля.
#   • submit(account_id, text) возвращает один из результатов:
#       Prompt (следующий вопрос) | ValidationFailed (тот же вопрос + ошибка) |
#       Completed (черновик сохранён / поле обновлено) | NoActiveForm.
#
# Правила:
#   • Ошибка валидации не меняет состояние.
#   • cancel() из любого состояния сбрасывает в NONE и выбрасывает черновик.
#   • До SAVE нет побочных эффектов: профиль пишется в БД только через save_profile
#     на финальном шаге; при ошибке сохранения сессия остаётся на прежнем шаге.
# -----------------------------------------------------------------------------

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .config import get_settings
from .errors import ValidationError
from .session_store import EditTarget, FormState, Session, SessionStore
from .utils import get_logger

logger = get_logger("orderbot.intake")
settings = get_settings()

TOTAL_STEPS = 15

GENDERS = ("male", "female", "other", "prefer_not_to_say")

US_STATES: Dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "DC": "District of Columbia",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois",
    "IN": "Indiana", "IA": "Iowa", "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana",
    "ME": "Maine", "MD": "Maryland", "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota",
    "MS": "Mississippi", "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma", "OR": "Oregon",
    "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina", "SD": "South Dakota",
    "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont", "VA": "Virginia",
    "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}
_STATE_BY_NAME = {name.lower(): code for code, name in US_STATES.items()}

_SKIP_WORDS = ("", "none", "skip")
_PHONE_RE = re.compile(r"^\+?[\d\s\-\(\)]+$")
_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")
_DOB_RE = re.compile(r"^(0[1-9]|1[0-2])[-/](0[1-9]|[12]\d|3[01])[-/](\d{4})$")
_POSTAL_RE = re.compile(r"^\d{5}(-\d{4})?$")


# =============================================================================
# Результаты шага
# =============================================================================
@dataclass
class Prompt:
    state: FormState
    text: str
    options: List[Tuple[str, str]] = field(default_factory=list)  # (подпись, значение) для кнопок
    skippable: bool = False


@dataclass
class ValidationFailed:
    state: FormState
    field: str
    message: str
    prompt: Prompt


@dataclass
class Completed:
    result: Any
    draft: Dict[str, Any]
    updated: bool = False


@dataclass
class NoActiveForm:
    text: str = "No active form. Use /register to add a customer."


StepResult = Union[Prompt, ValidationFailed, Completed, NoActiveForm]

# save_profile(account_id, draft) / update_profile(account_id, profile_id, {field: value})
ProfileSink = Callable[[int, Dict[str, Any]], Awaitable[Any]]
ProfileUpdater = Callable[[int, int, Dict[str, Any]], Awaitable[Any]]


# =============================================================================
# Валидаторы полей: возвращают нормализованное значение или бросают ValidationError
# =============================================================================
def _optional(value: str) -> Optional[str]:
    return None if value.lower() in _SKIP_WORDS else value


def _min_len(field_name: str, value: str, n: int, message: str) -> str:
    if len(value) < n:
        raise ValidationError(field_name, message)
    return value


def validate_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if not _PHONE_RE.match(value) or len(digits) < 10:
        raise ValidationError("phone", "Please enter a valid phone number:")
    return value


def validate_email(value: str) -> str:
    if not _EMAIL_RE.search(value):
        raise ValidationError("email", "Please enter a valid email address:")
    return value


def validate_gender(value: str) -> str:
    normalized = re.sub(r"[\s\-]+", "_", value.strip().lower())
    if normalized not in GENDERS:
        raise ValidationError("gender", "Please select one of: Male, Female, Other, Prefer not to say.")
    return normalized


def validate_dob(value: str, today: Optional[date] = None) -> str:
    """MM-DD-YYYY или MM/DD/YYYY → ISO-дата (YYYY-MM-DD). Дата строго в прошлом, год ≥ 1900."""
    m = _DOB_RE.match(value)
    if not m:
        raise ValidationError("dob", "Please enter date of birth in MM-DD-YYYY format (e.g., 03-15-1990):")
    month, day, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    try:
        born = date(year, month, day)
    except ValueError:
        raise ValidationError("dob", "Please enter a valid birth date (must be in the past):")
    today = today or date.today()
    if year < 1900:
        raise ValidationError("dob", f"Please enter a valid birth year (1900-{today.year - 1}):")
    if born >= today:
        raise ValidationError("dob", "Please enter a valid birth date (must be in the past):")
    return born.isoformat()


def validate_state(value: str) -> str:
    v = value.strip()
    if v.upper() in US_STATES:
        return v.upper()
    code = _STATE_BY_NAME.get(v.lower())
    if code is None:
        raise ValidationError("state", "Please enter a valid state:")
    return code


def validate_postal(value: str) -> str:
    if not _POSTAL_RE.match(value):
        raise ValidationError("postal", "Please enter a valid ZIP code (e.g., 12345 or 12345-6789):")
    return value


def validate_credential(value: str) -> str:
    if len(value) < 6:
        raise ValidationError("credential", "❌ Please enter a password with at least 6 characters.")
    return value


FIELD_VALIDATORS: Dict[str, Callable[[str], Any]] = {
    "first_name": lambda v: _min_len("first_name", v, 2, "Please enter a valid first name (at least 2 characters):"),
    "middle_name": _optional,
    "last_name": lambda v: _min_len("last_name", v, 2, "Please enter a valid last name (at least 2 characters):"),
    "phone": validate_phone,
    "email": validate_email,
    "gender": validate_gender,
    "dob": validate_dob,
    "address": lambda v: _min_len("address", v, 5, "Please enter a valid street address:"),
    "apartment": _optional,
    "city": lambda v: _min_len("city", v, 2, "Please enter a valid city name:"),
    "state": validate_state,
    "postal": validate_postal,
    "credential": validate_credential,
}

EDITABLE_FIELDS = tuple(FIELD_VALIDATORS)


def validate_field(field_name: str, raw: str) -> Any:
    """Общая точка валидации: обрезка, лимит длины, правило поля."""
    if field_name not in FIELD_VALIDATORS:
        raise ValidationError(field_name, "This field cannot be edited.")
    text = (raw or "").strip()
    if len(text) > settings.INTAKE_MAX_INPUT_LENGTH:
        raise ValidationError(
            field_name,
            f"❌ Input too long. Please enter a shorter response (max {settings.INTAKE_MAX_INPUT_LENGTH} characters).",
        )
    return FIELD_VALIDATORS[field_name](text)


# =============================================================================
# Шаги анкеты
# =============================================================================
# state -> (поле черновика, № шага, заголовок, вопрос, подсказка)
_STEPS: Dict[FormState, Tuple[Optional[str], int, str, str, str]] = {
    FormState.NAME: ("first_name", 1, "First Name 👤", "Please enter the customer's first name:", "Example: John"),
    FormState.MIDDLE_NAME: ("middle_name", 2, "Middle Name 👤", "Please enter the customer's middle name (optional):",
                            "Type \"skip\" if they don't have a middle name"),
    FormState.LAST_NAME: ("last_name", 3, "Last Name 👤", "Please enter the customer's last name:", "Example: Smith"),
    FormState.PHONE: ("phone", 4, "Phone Number 📞", "Please enter the customer's phone number:",
                      "Examples: +1-555-123-4567 or 555-123-4567"),
    FormState.EMAIL: ("email", 5, "Email Address 📧", "Please enter the customer's email address:",
                      "Example: john.smith@email.com"),
    FormState.GENDER: ("gender", 6, "Gender ⚧️", "Please select the customer's gender:", ""),
    FormState.DOB: ("dob", 7, "Date of Birth 🎂", "Please enter the customer's date of birth:",
                    "Format: MM-DD-YYYY (Example: 03-15-1990)"),
    FormState.ADDRESS: ("address", 8, "Street Address 🏠", "Please enter the customer's street address:",
                        "Example: 123 Main Street"),
    FormState.APARTMENT: ("apartment", 9, "Apartment/Suite 🏢", "Please enter apartment or suite number (if any):",
                          "Examples: Apt 4B, Suite 101, or type \"none\" if not applicable"),
    FormState.CITY: ("city", 10, "City 🏙️", "Please enter the customer's city:", "Example: New York"),
    FormState.STATE: ("state", 11, "State 🗺️", "Please select the customer's state:", "Two-letter code or full name"),
    FormState.POSTAL: ("postal", 12, "ZIP Code 📮", "Please enter the customer's ZIP code:",
                       "Examples: 12345 or 12345-6789"),
    FormState.PASSWORD_OPTION: (None, 13, "Password (Optional) 🔐",
                                "Would you like to add a password for email confirmation services?",
                                "Only needed if you plan to order email confirmation services"),
    FormState.PASSWORD: ("credential", 14, "Create Password 🔐",
                         "Please enter a password (minimum 6 characters):", ""),
}

_ORDER: List[FormState] = [
    FormState.NAME, FormState.MIDDLE_NAME, FormState.LAST_NAME, FormState.PHONE, FormState.EMAIL,
    FormState.GENDER, FormState.DOB, FormState.ADDRESS, FormState.APARTMENT, FormState.CITY,
    FormState.STATE, FormState.POSTAL, FormState.PASSWORD_OPTION, FormState.PASSWORD,
]

_GENDER_OPTIONS = [("Male", "male"), ("Female", "female"), ("Other", "other"), ("Prefer not to say", "prefer_not_to_say")]
_PASSWORD_OPTIONS = [("🔐 Add Password", "add"), ("⏭️ Skip Password", "skip")]
_PASSWORD_YES = ("add", "yes", "y")
_PASSWORD_NO = ("skip", "no", "n")


def prompt_for(state: FormState) -> Prompt:
    _, step, title, question, hint = _STEPS[state]
    text = f"Step {step} of {TOTAL_STEPS}: {title}\n{question}"
    if hint:
        text += f"\n\n💡 {hint}"
    options: List[Tuple[str, str]] = []
    if state == FormState.GENDER:
        options = list(_GENDER_OPTIONS)
    elif state == FormState.STATE:
        options = [(name, code) for code, name in US_STATES.items()]
    elif state == FormState.PASSWORD_OPTION:
        options = list(_PASSWORD_OPTIONS)
    return Prompt(state=state, text=text, options=options,
                  skippable=state in (FormState.MIDDLE_NAME, FormState.APARTMENT))


def _edit_prompt(target: EditTarget) -> Prompt:
    label = target.field.replace("_", " ")
    return Prompt(state=FormState.EDITING_FIELD, text=f"Enter the new {label}:")


def _next_state(state: FormState) -> Optional[FormState]:
    idx = _ORDER.index(state)
    return _ORDER[idx + 1] if idx + 1 < len(_ORDER) else None


# =============================================================================
# Машина состояний
# =============================================================================
class IntakeForm:
    """
    Анкета поверх SessionStore. Все вызовы для одного account_id
    выполняются под store.lock(account_id).
    """

    def __init__(
        self,
        store: SessionStore,
        save_profile: ProfileSink,
        update_profile: Optional[ProfileUpdater] = None,
    ):
        self.store = store
        self.save_profile = save_profile
        self.update_profile = update_profile

    async def start(self, account_id: int) -> Prompt:
        """Начать новую анкету (старый черновик выбрасывается)."""
        async with self.store.lock(account_id):
            session = self.store.get(account_id)
            session.reset()
            session.state = FormState.NAME
            self.store.save(session)
        logger.info("Intake started account=%s", account_id)
        return prompt_for(FormState.NAME)

    async def cancel(self, account_id: int) -> None:
        async with self.store.lock(account_id):
            self.store.clear(account_id)
        logger.info("Intake cancelled account=%s", account_id)

    async def begin_edit(self, account_id: int, profile_id: int, field_name: str) -> Prompt:
        if field_name not in EDITABLE_FIELDS:
            raise ValidationError(field_name, "This field cannot be edited.")
        async with self.store.lock(account_id):
            session = self.store.get(account_id)
            session.reset()
            session.state = FormState.EDITING_FIELD
            session.editing = EditTarget(profile_id=profile_id, field=field_name)
            self.store.save(session)
            return _edit_prompt(session.editing)

    def current_prompt(self, account_id: int) -> Optional[Prompt]:
        session = self.store.get(account_id)
        if session.state == FormState.NONE:
            return None
        if session.state == FormState.EDITING_FIELD and session.editing:
            return _edit_prompt(session.editing)
        return prompt_for(session.state)

    async def submit(self, account_id: int, raw_input: str) -> StepResult:
        async with self.store.lock(account_id):
            session = self.store.get(account_id)
            if session.state == FormState.NONE:
                return NoActiveForm()
            if session.state == FormState.EDITING_FIELD:
                return await self._submit_edit(session, raw_input)
            return await self._submit_step(session, raw_input)

    # --------------------------------------------------------------------- #
    async def _submit_step(self, session: Session, raw_input: str) -> StepResult:
        state = session.state
        field_name = _STEPS[state][0]
        draft = dict(session.draft)

        try:
            if state == FormState.PASSWORD_OPTION:
                answer = (raw_input or "").strip().lower()
                if answer in _PASSWORD_YES:
                    next_state: Optional[FormState] = FormState.PASSWORD
                elif answer in _PASSWORD_NO:
                    draft["credential"] = None
                    next_state = None
                else:
                    raise ValidationError("password_option", "Please choose Add Password or Skip Password.")
            else:
                draft[field_name] = validate_field(field_name, raw_input)
                next_state = _next_state(state)
        except ValidationError as e:
            logger.info("Intake validation failed account=%s state=%s", session.account_id, state.value)
            return ValidationFailed(state=state, field=e.field, message=e.public_message, prompt=prompt_for(state))

        if next_state is not None:
            session.draft = draft
            session.state = next_state
            self.store.save(session)
            return prompt_for(next_state)

        # SAVE: единственный побочный эффект анкеты
        result = await self.save_profile(session.account_id, draft)
        self.store.clear(session.account_id)
        logger.info("Intake completed account=%s", session.account_id)
        return Completed(result=result, draft=draft)

    async def _submit_edit(self, session: Session, raw_input: str) -> StepResult:
        target = session.editing
        if target is None or self.update_profile is None:
            self.store.clear(session.account_id)
            return NoActiveForm()
        try:
            value = validate_field(target.field, raw_input)
        except ValidationError as e:
            return ValidationFailed(state=FormState.EDITING_FIELD, field=e.field, message=e.public_message,
                                    prompt=_edit_prompt(target))

        changes = {target.field: value}
        result = await self.update_profile(session.account_id, target.profile_id, changes)
        self.store.clear(session.account_id)
        logger.info("Profile field updated account=%s profile=%s field=%s", session.account_id, target.profile_id, target.field)
        return Completed(result=result, draft=changes, updated=True)
