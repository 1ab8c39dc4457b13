"""Host message contract for Sender Notes.

The host (a mail client UI) talks to the notes backend with small JSON
messages carrying an ``action`` name and camelCase fields. Each message is
parsed into one request model, checked by the validation layer and handed
to exactly one repository call. Responses are plain JSON-compatible values.

Usage:
    from sendernotes.messaging import MessageDispatcher

    dispatcher = MessageDispatcher(repository)
    response = await dispatcher.dispatch(
        {"action": "findNoteByEmail", "email": "alice@example.com"}
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sendernotes.core.errors import RequestValidationError, UnknownActionError
from sendernotes.core.logging import get_logger, request_context
from sendernotes.db.models import SettingValue
from sendernotes.matching import MatchType, validate_pattern
from sendernotes.repository import NotesRepository

logger = get_logger(__name__)


class _Request(BaseModel):
    """Base for host requests: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# -----------------------------------------------------------------------------
# Notes
# -----------------------------------------------------------------------------


class SaveNoteRequest(_Request):
    """Create a note, or update one when ``id`` is given.

    ``email`` is the sender being annotated. When present the pattern must
    match it.
    """

    action: Literal["saveNote"]
    id: int | None = None
    pattern: str
    match_type: MatchType = Field(alias="matchType")
    note: str
    original_email: str | None = Field(default=None, alias="originalEmail")
    email: str | None = None


class GetNoteByIdRequest(_Request):
    action: Literal["getNoteById"]
    id: int


class FindNoteByEmailRequest(_Request):
    action: Literal["findNoteByEmail"]
    email: str


class FindNotesByEmailRequest(_Request):
    action: Literal["findNotesByEmail"]
    email: str


class CheckDuplicateRequest(_Request):
    action: Literal["checkDuplicate"]
    pattern: str
    match_type: MatchType = Field(alias="matchType")
    exclude_id: int | None = Field(default=None, alias="excludeId")


class DeleteNoteRequest(_Request):
    action: Literal["deleteNote"]
    id: int


class DeleteNoteByEmailRequest(_Request):
    action: Literal["deleteNoteByEmail"]
    email: str


class GetAllNotesRequest(_Request):
    action: Literal["getAllNotes"]


class ValidatePatternRequest(_Request):
    action: Literal["validatePattern"]
    email: str
    pattern: str
    match_type: str = Field(alias="matchType")


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------


class GetTemplatesRequest(_Request):
    action: Literal["getTemplates"]


class AddTemplateRequest(_Request):
    action: Literal["addTemplate"]
    text: str


class UpdateTemplateRequest(_Request):
    """Replace a template's text. Unsaved defaults are addressed by ``order``."""

    action: Literal["updateTemplate"]
    id: int | None = None
    order: int | None = None
    text: str


class DeleteTemplateRequest(_Request):
    action: Literal["deleteTemplate"]
    id: int | None = None
    order: int | None = None


class MoveTemplateRequest(_Request):
    action: Literal["moveTemplate"]
    id: int | None = None
    order: int | None = None
    after_id: int | None = Field(default=None, alias="afterId")
    after_order: int | None = Field(default=None, alias="afterOrder")


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


class GetSettingsRequest(_Request):
    action: Literal["getSettings"]


class SaveSettingsRequest(_Request):
    action: Literal["saveSettings"]
    settings: dict[str, SettingValue]


class GetSettingRequest(_Request):
    action: Literal["getSetting"]
    key: str
    default: SettingValue = None


class SetSettingRequest(_Request):
    action: Literal["setSetting"]
    key: str
    value: SettingValue


Request = Annotated[
    SaveNoteRequest
    | GetNoteByIdRequest
    | FindNoteByEmailRequest
    | FindNotesByEmailRequest
    | CheckDuplicateRequest
    | DeleteNoteRequest
    | DeleteNoteByEmailRequest
    | GetAllNotesRequest
    | ValidatePatternRequest
    | GetTemplatesRequest
    | AddTemplateRequest
    | UpdateTemplateRequest
    | DeleteTemplateRequest
    | MoveTemplateRequest
    | GetSettingsRequest
    | SaveSettingsRequest
    | GetSettingRequest
    | SetSettingRequest,
    Field(discriminator="action"),
]


_REQUEST_TYPES: tuple[type[_Request], ...] = get_args(get_args(Request)[0])
_request_adapter: TypeAdapter[Any] = TypeAdapter(Request)


def _action_name(model: type[_Request]) -> str:
    return get_args(model.model_fields["action"].annotation)[0]


# Action names the dispatcher understands
ACTIONS: frozenset[str] = frozenset(_action_name(model) for model in _REQUEST_TYPES)


def _format_validation_errors(error: ValidationError) -> list[str]:
    """One readable line per pydantic error, skipping the discriminator level."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"][1:]) or "message"
        if err["type"] == "missing":
            messages.append(f"Missing required field '{field_path}'")
        else:
            messages.append(f"Field '{field_path}': {err['msg']}")
    return messages


def parse_request(message: Any) -> Any:
    """Parse a raw host message into its request model.

    Raises:
        UnknownActionError: If the message has no known ``action``
        RequestValidationError: If the fields do not fit the action
    """
    if not isinstance(message, dict):
        raise RequestValidationError(
            f"Message must be a JSON object, got {type(message).__name__}"
        )

    action = message.get("action")
    if not isinstance(action, str) or action not in ACTIONS:
        raise UnknownActionError(
            f"Unknown action {action!r}. Expected one of: {', '.join(sorted(ACTIONS))}",
            action=action if isinstance(action, str) else None,
        )

    try:
        return _request_adapter.validate_python(message)
    except ValidationError as e:
        errors = _format_validation_errors(e)
        raise RequestValidationError(
            f"Invalid '{action}' request: {'; '.join(errors)}", action=action, errors=errors
        ) from e


def check_save_note(request: SaveNoteRequest) -> list[str]:
    """Caller-facing checks for a note before it is saved.

    Returns:
        Problems found, empty when the note may be saved
    """
    problems = []
    if not request.pattern.strip():
        problems.append("Pattern cannot be empty")
    if not request.note.strip():
        problems.append("Note cannot be empty")
    if (
        request.email
        and request.pattern.strip()
        and not validate_pattern(request.email, request.pattern, request.match_type)
    ):
        problems.append(
            f"Pattern '{request.pattern}' ({request.match_type}) does not match "
            f"the sender {request.email}"
        )
    return problems


class MessageDispatcher:
    """Routes host messages to repository calls, one handler per request type."""

    def __init__(self, repository: NotesRepository):
        self._repository = repository
        self._handlers: dict[type[_Request], Callable[[Any], Awaitable[Any]]] = {
            SaveNoteRequest: self._save_note,
            GetNoteByIdRequest: self._get_note_by_id,
            FindNoteByEmailRequest: self._find_note_by_email,
            FindNotesByEmailRequest: self._find_notes_by_email,
            CheckDuplicateRequest: self._check_duplicate,
            DeleteNoteRequest: self._delete_note,
            DeleteNoteByEmailRequest: self._delete_note_by_email,
            GetAllNotesRequest: self._get_all_notes,
            ValidatePatternRequest: self._validate_pattern,
            GetTemplatesRequest: self._get_templates,
            AddTemplateRequest: self._add_template,
            UpdateTemplateRequest: self._update_template,
            DeleteTemplateRequest: self._delete_template,
            MoveTemplateRequest: self._move_template,
            GetSettingsRequest: self._get_settings,
            SaveSettingsRequest: self._save_settings,
            GetSettingRequest: self._get_setting,
            SetSettingRequest: self._set_setting,
        }

    async def dispatch(self, message: Any) -> Any:
        """Handle one host message and return its JSON-compatible response.

        Raises:
            UnknownActionError: If the action is not handled
            RequestValidationError: If the message fails validation
            DatabaseError: If storage fails
        """
        raw_action = message.get("action") if isinstance(message, dict) else None
        with request_context(raw_action if isinstance(raw_action, str) else None):
            try:
                request = parse_request(message)
                logger.debug("request_received")
                response = await self._handlers[type(request)](request)
                logger.debug("request_handled")
                return response
            except RequestValidationError as e:
                logger.warning("request_rejected", errors=e.errors or [str(e)])
                raise

    # =========================================================================
    # Notes
    # =========================================================================

    async def _save_note(self, request: SaveNoteRequest) -> dict[str, Any]:
        problems = check_save_note(request)
        if problems:
            raise RequestValidationError(
                f"Cannot save note: {'; '.join(problems)}",
                action=request.action,
                errors=problems,
            )
        result = await self._repository.save_note(
            request.pattern,
            request.match_type,
            request.note,
            note_id=request.id,
            original_email=request.original_email or request.email,
        )
        return result.to_dict()

    async def _get_note_by_id(self, request: GetNoteByIdRequest) -> dict[str, Any] | None:
        note = await self._repository.get_note_by_id(request.id)
        return note.to_dict() if note else None

    async def _find_note_by_email(self, request: FindNoteByEmailRequest) -> dict[str, Any] | None:
        note = await self._repository.find_note_by_email(request.email)
        return note.to_dict() if note else None

    async def _find_notes_by_email(self, request: FindNotesByEmailRequest) -> list[dict[str, Any]]:
        notes = await self._repository.find_notes_by_email(request.email)
        return [note.to_dict() for note in notes]

    async def _check_duplicate(self, request: CheckDuplicateRequest) -> dict[str, Any]:
        check = await self._repository.check_duplicate(
            request.pattern, request.match_type, request.exclude_id
        )
        return check.to_dict()

    async def _delete_note(self, request: DeleteNoteRequest) -> dict[str, Any]:
        await self._repository.delete_note(request.id)
        return {"success": True}

    async def _delete_note_by_email(self, request: DeleteNoteByEmailRequest) -> dict[str, Any]:
        await self._repository.delete_note_by_email(request.email)
        return {"success": True}

    async def _get_all_notes(self, request: GetAllNotesRequest) -> dict[str, Any]:
        notes = await self._repository.get_all_notes()
        return {str(note_id): note.to_dict() for note_id, note in notes.items()}

    async def _validate_pattern(self, request: ValidatePatternRequest) -> bool:
        return self._repository.validate_pattern(request.email, request.pattern, request.match_type)

    # =========================================================================
    # Templates
    # =========================================================================

    async def _get_templates(self, request: GetTemplatesRequest) -> list[dict[str, Any]]:
        return [template.to_dict() for template in await self._repository.get_templates()]

    async def _add_template(self, request: AddTemplateRequest) -> dict[str, Any]:
        template = await self._repository.add_template(request.text)
        return {"success": True, "template": template.to_dict()}

    async def _update_template(self, request: UpdateTemplateRequest) -> dict[str, Any]:
        template = await self._repository.update_template(
            request.id, request.text, default_order=request.order
        )
        return {"success": True, "template": template.to_dict() if template else None}

    async def _delete_template(self, request: DeleteTemplateRequest) -> dict[str, Any]:
        await self._repository.delete_template(request.id, default_order=request.order)
        return {"success": True}

    async def _move_template(self, request: MoveTemplateRequest) -> dict[str, Any]:
        await self._repository.move_template(
            request.id,
            request.after_id,
            default_order=request.order,
            after_default_order=request.after_order,
        )
        return {"success": True}

    # =========================================================================
    # Settings
    # =========================================================================

    async def _get_settings(self, request: GetSettingsRequest) -> dict[str, Any]:
        return await self._repository.get_settings()

    async def _save_settings(self, request: SaveSettingsRequest) -> dict[str, Any]:
        await self._repository.save_settings(request.settings)
        return {"success": True}

    async def _get_setting(self, request: GetSettingRequest) -> Any:
        return await self._repository.get_setting(request.key, request.default)

    async def _set_setting(self, request: SetSettingRequest) -> dict[str, Any]:
        await self._repository.set_setting(request.key, request.value)
        return {"success": True}
