"""
Registry of the transformer and filter options a sync job can enable.

Each option is keyed by its id and carries its own field schema, defaults,
an optional extra validator, a human summary and a serializer to the internal
config item stored on the job. The stored job config has the shape
``{"transformers": [...], "filters": [...]}``; cli_config maps those items
to the calendarsync CLI format.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

PLACEHOLDER_TITLE_TOKEN = "{{title}}"

TRANSFORMER = "transformer"
FILTER = "filter"

FieldValue = Union[str, int, float, bool]
FieldValueMap = Dict[str, FieldValue]


class ConfigValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class TextField:
    id: str
    label: str
    default: str = ""
    max_length: Optional[int] = None
    required: bool = False
    multiline: bool = False


@dataclass(frozen=True)
class NumberField:
    id: str
    label: str
    default: float = 0
    min: Optional[float] = None
    max: Optional[float] = None
    required: bool = False


@dataclass(frozen=True)
class SelectField:
    id: str
    label: str
    choices: Tuple[str, ...]
    default: str
    required: bool = False


@dataclass(frozen=True)
class CheckboxField:
    id: str
    label: str
    default: bool = False
    required: bool = False


FieldDefinition = Union[TextField, NumberField, SelectField, CheckboxField]


@dataclass(frozen=True)
class OptionDefinition:
    id: str
    kind: str
    label: str
    description: str
    fields: Tuple[FieldDefinition, ...]
    summarize: Callable[[FieldValueMap], str]
    to_config: Callable[[FieldValueMap], Optional[Dict[str, Any]]]
    validate: Optional[Callable[[FieldValueMap], List[str]]] = None
    default_enabled: bool = False
    # "type" of the serialized config item
    config_type: str = ""


@dataclass
class OptionState:
    enabled: bool
    values: FieldValueMap = field(default_factory=dict)


# --- Title template ---

def _summarize_title_template(values: FieldValueMap) -> str:
    prefix = str(values.get("prefix", "")).strip()
    suffix = str(values.get("suffix", "")).strip()
    parts = []
    if prefix:
        parts.append(f'adds prefix "{prefix}"')
    if suffix:
        parts.append(f'adds suffix "{suffix}"')
    if values.get("uppercase"):
        parts.append("converts titles to uppercase")

    if not parts:
        return "Uses the original title without modifications."
    return f"Title template {' and '.join(parts)}."


def _title_template_config(values: FieldValueMap) -> Dict[str, Any]:
    prefix = str(values.get("prefix", ""))
    suffix = str(values.get("suffix", ""))
    return {
        "type": "titleTemplateTransformer",
        "template": f"{prefix}{PLACEHOLDER_TITLE_TOKEN}{suffix}",
        "prefix": prefix,
        "suffix": suffix,
        "uppercase": bool(values.get("uppercase")),
    }


# --- Description note ---

def _summarize_description_note(values: FieldValueMap) -> str:
    note = str(values.get("note", "")).strip()
    if not note:
        return "Note text not provided."
    placement = "Prepended" if values.get("placement") == "PREPEND" else "Appended"
    return f'{placement} note "{note}" to the description.'


def _validate_description_note(values: FieldValueMap) -> List[str]:
    if not str(values.get("note", "")).strip():
        return ["Provide a note to include in the event description."]
    return []


def _description_note_config(values: FieldValueMap) -> Dict[str, Any]:
    return {
        "type": "descriptionNoteTransformer",
        "note": str(values.get("note", "")).strip(),
        "placement": "PREPEND" if values.get("placement") == "PREPEND" else "APPEND",
    }


# --- Time window ---

def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _summarize_time_window(values: FieldValueMap) -> str:
    past_days = int(values.get("pastDays", 0))
    future_days = int(values.get("futureDays", 0))
    past_part = f"{_plural(past_days, 'day')} of history" if past_days > 0 else "no history"
    return f"Syncs {past_part} and the next {_plural(future_days, 'day')}."


def _validate_time_window(values: FieldValueMap) -> List[str]:
    errors = []
    if values.get("futureDays", 0) <= 0:
        errors.append("Future days must be greater than zero.")
    return errors


def _time_window_config(values: FieldValueMap) -> Dict[str, Any]:
    return {
        "type": "timeWindowFilter",
        "pastDays": int(max(0, min(365, values.get("pastDays", 0)))),
        "futureDays": int(max(1, min(730, values.get("futureDays", 1)))),
    }


# --- All-day events ---

def _summarize_all_day(values: FieldValueMap) -> str:
    if values.get("exclude"):
        return "Skips all-day events from being copied."
    return "Keeps all-day events in the sync."


def _all_day_config(values: FieldValueMap) -> Dict[str, Any]:
    return {"type": "allDayEventFilter", "exclude": bool(values.get("exclude"))}


_DEFINITIONS = (
    OptionDefinition(
        id="titleTemplate",
        kind=TRANSFORMER,
        label="Title template",
        description="Add a prefix or suffix around the original event title so synced entries are easy to distinguish.",
        fields=(
            TextField("prefix", "Prefix", default="[Synced] ", max_length=40),
            TextField("suffix", "Suffix", default="", max_length=40),
            CheckboxField("uppercase", "Transform final title to uppercase", default=False),
        ),
        summarize=_summarize_title_template,
        to_config=_title_template_config,
        config_type="titleTemplateTransformer",
    ),
    OptionDefinition(
        id="descriptionNote",
        kind=TRANSFORMER,
        label="Description note",
        description="Append or prepend a note to the event description to document how the entry reached the destination calendar.",
        fields=(
            TextField(
                "note",
                "Note text",
                default="This event is synchronised by Kitchen Sync.",
                max_length=280,
                required=True,
                multiline=True,
            ),
            SelectField("placement", "Placement", choices=("APPEND", "PREPEND"), default="APPEND"),
        ),
        summarize=_summarize_description_note,
        to_config=_description_note_config,
        config_type="descriptionNoteTransformer",
        validate=_validate_description_note,
    ),
    OptionDefinition(
        id="timeWindow",
        kind=FILTER,
        label="Time window filter",
        description="Limit syncing to events inside a rolling window so historical data or distant future plans are ignored.",
        fields=(
            NumberField("pastDays", "Include events from the past (days)", default=7, min=0, max=365),
            NumberField("futureDays", "Include events in the future (days)", default=30, min=1, max=730, required=True),
        ),
        summarize=_summarize_time_window,
        to_config=_time_window_config,
        config_type="timeWindowFilter",
        validate=_validate_time_window,
    ),
    OptionDefinition(
        id="allDay",
        kind=FILTER,
        label="All-day event filter",
        description="Exclude all-day events when mirroring calendars to avoid duplicating day blockers.",
        fields=(CheckboxField("exclude", "Skip all-day events", default=True),),
        summarize=_summarize_all_day,
        to_config=_all_day_config,
        config_type="allDayEventFilter",
        default_enabled=True,
    ),
)

OPTION_DEFINITIONS: Dict[str, OptionDefinition] = {definition.id: definition for definition in _DEFINITIONS}


def default_state_for(definition: OptionDefinition) -> OptionState:
    return OptionState(
        enabled=definition.default_enabled,
        values={f.id: f.default for f in definition.fields},
    )


def create_default_option_state() -> Dict[str, OptionState]:
    return {option_id: default_state_for(definition) for option_id, definition in OPTION_DEFINITIONS.items()}


def _validate_field(f: FieldDefinition, raw: Any, enabled: bool) -> Tuple[FieldValue, List[str]]:
    if raw is None:
        if enabled and f.required:
            return f.default, [f"{f.label} is required."]
        return f.default, []

    if isinstance(f, TextField):
        if not isinstance(raw, str):
            return f.default, [f"{f.label} must be a string."]
        if f.max_length and len(raw) > f.max_length:
            return raw, [f"{f.label} must be {f.max_length} characters or fewer."]
        return raw, []

    if isinstance(f, NumberField):
        numeric = raw
        if isinstance(raw, str) and raw.strip():
            try:
                numeric = float(raw)
            except ValueError:
                numeric = None
        # bool is an int subclass but never a valid number here
        if isinstance(numeric, bool) or not isinstance(numeric, (int, float)) or numeric != numeric:
            return f.default, [f"{f.label} must be a number."]
        errors = []
        if f.min is not None and numeric < f.min:
            errors.append(f"{f.label} must be greater than or equal to {f.min:g}.")
        if f.max is not None and numeric > f.max:
            errors.append(f"{f.label} must be less than or equal to {f.max:g}.")
        return numeric, errors

    if isinstance(f, SelectField):
        if not isinstance(raw, str) or raw not in f.choices:
            return f.default, [f"{f.label} must be one of the provided options."]
        return raw, []

    if not isinstance(raw, bool):
        return f.default, [f"{f.label} must be true or false."]
    return raw, []


def parse_option(definition: OptionDefinition, raw: Any) -> Tuple[OptionState, List[str]]:
    state = default_state_for(definition)
    if raw is None:
        return state, []

    if not isinstance(raw, dict):
        return state, [f"{definition.label} must be an object."]

    enabled = raw.get("enabled")
    if not isinstance(enabled, bool):
        enabled = state.enabled

    errors = []
    values: FieldValueMap = {}
    for f in definition.fields:
        value, field_errors = _validate_field(f, raw.get(f.id), enabled)
        values[f.id] = value
        errors.extend(f"{definition.label}: {message}" for message in field_errors)

    if enabled and definition.validate:
        errors.extend(f"{definition.label}: {message}" for message in definition.validate(values))

    return OptionState(enabled=enabled, values=values), errors


def build_config_from_state(state: Dict[str, OptionState]) -> Dict[str, List[Dict[str, Any]]]:
    sanitized = {"transformers": [], "filters": []}
    for option_id, definition in OPTION_DEFINITIONS.items():
        option_state = state.get(option_id)
        if not option_state or not option_state.enabled:
            continue
        item = definition.to_config(option_state.values)
        if item is None:
            continue
        key = "transformers" if definition.kind == TRANSFORMER else "filters"
        sanitized[key].append(item)
    return sanitized


def parse_option_state(raw_config: Any) -> Dict[str, OptionState]:
    """Validates a raw ``{option_id: {enabled, ...fields}}`` payload into option states."""
    if raw_config is None:
        return create_default_option_state()

    if not isinstance(raw_config, dict):
        raise ConfigValidationError(["Config must be an object mapping option identifiers to their settings."])

    state = {}
    errors = []
    for option_id, definition in OPTION_DEFINITIONS.items():
        state[option_id], option_errors = parse_option(definition, raw_config.get(option_id))
        errors.extend(option_errors)

    if errors:
        raise ConfigValidationError(errors)
    return state


def validate_config_payload(raw_config: Any) -> Dict[str, List[Dict[str, Any]]]:
    if raw_config is None:
        return {"transformers": [], "filters": []}
    return build_config_from_state(parse_option_state(raw_config))


def state_from_config(job_config: Any) -> Dict[str, OptionState]:
    """Option states behind a stored job config; options without an item are disabled."""
    items = {}
    if isinstance(job_config, dict):
        for key in ("transformers", "filters"):
            value = job_config.get(key)
            if not isinstance(value, list):
                continue
            for item in value:
                if isinstance(item, dict) and item.get("type"):
                    items[item["type"]] = item

    state = {}
    for option_id, definition in OPTION_DEFINITIONS.items():
        option_state = default_state_for(definition)
        item = items.get(definition.config_type)
        option_state.enabled = item is not None
        if item is not None:
            option_state.values.update({f.id: item[f.id] for f in definition.fields if f.id in item})
        state[option_id] = option_state
    return state


def create_summary(state: Dict[str, OptionState]) -> Dict[str, List[str]]:
    summary = {"transformers": [], "filters": []}
    for option_id, definition in OPTION_DEFINITIONS.items():
        option_state = state.get(option_id)
        if not option_state or not option_state.enabled:
            continue
        text = definition.summarize(option_state.values)
        if text:
            key = "transformers" if definition.kind == TRANSFORMER else "filters"
            summary[key].append(text)
    return summary
