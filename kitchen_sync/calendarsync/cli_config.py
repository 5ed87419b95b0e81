"""
Builds the declarative config document consumed by the calendarsync CLI.

Everything here is pure: the same inputs always produce the same document and
nothing touches the filesystem or the environment.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from kitchen_sync.errors import ConfigurationError
from kitchen_sync.calendarsync.transformers import (
    PLACEHOLDER_TITLE_TOKEN,
    OptionState,
    build_config_from_state,
)

DEFAULT_AUTH_STORAGE_PATH = "./auth-storage.yaml"


class CliConfigError(ConfigurationError):
    code = "MISSING_OAUTH_CLIENT"


@dataclass(frozen=True)
class CalendarEndpoint:
    calendar_id: str
    account_id: str
    time_zone: str = "UTC"


@dataclass(frozen=True)
class OAuthClient:
    client_id: Optional[str]
    client_secret: Optional[str]


def _title_template(item: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": "ReplaceTitle", "config": {"NewTitle": item.get("template") or PLACEHOLDER_TITLE_TOKEN}}


def _description_note(item: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": "KeepDescription"}


def _time_window(item: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": "TimeFrame", "config": {"HourStart": 0, "HourEnd": 24}}


def _all_day(item: Dict[str, Any]) -> Dict[str, Any]:
    return {"name": "AllDayEvents"}


CLI_ITEM_MAPPERS = {
    "titleTemplateTransformer": _title_template,
    "descriptionNoteTransformer": _description_note,
    "timeWindowFilter": _time_window,
    "allDayEventFilter": _all_day,
}


def map_to_cli_format(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Unknown item types are dropped."""
    mapped = []
    for item in items:
        if not isinstance(item, dict):
            continue
        mapper = CLI_ITEM_MAPPERS.get(item.get("type"))
        if mapper:
            mapped.append(mapper(item))
    return mapped


def extract_config_items(job_config: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(job_config, dict):
        return []
    value = job_config.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict) and item]


def _google_adapter(calendar_id: str, oauth_client: OAuthClient) -> Dict[str, Any]:
    return {
        "adapter": {
            "type": "google",
            "calendar": calendar_id,
            "oAuth": {
                "clientId": oauth_client.client_id,
                "clientKey": oauth_client.client_secret,
            },
        }
    }


def build_cli_config(
    source: CalendarEndpoint,
    destination: CalendarEndpoint,
    transformers: List[Dict[str, Any]],
    filters: List[Dict[str, Any]],
    oauth_client: OAuthClient,
    auth_storage_path: Optional[str] = None,
) -> Dict[str, Any]:
    if not oauth_client.client_id or not oauth_client.client_secret:
        raise CliConfigError(
            "Missing GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET environment variables. "
            "These are required for the CalendarSync CLI."
        )

    document: Dict[str, Any] = {
        "sync": {
            "start": {"identifier": "MonthStart", "offset": -1},
            "end": {"identifier": "MonthEnd", "offset": 1},
        },
        "auth": {
            "storage_mode": "yaml",
            "config": {"path": auth_storage_path or DEFAULT_AUTH_STORAGE_PATH},
        },
        "source": _google_adapter(source.calendar_id, oauth_client),
        "sink": _google_adapter(destination.calendar_id, oauth_client),
    }

    transformations = map_to_cli_format(transformers)
    if transformations:
        document["transformations"] = transformations

    cli_filters = map_to_cli_format(filters)
    if cli_filters:
        document["filters"] = cli_filters

    document["updateConcurrency"] = 1
    return document


def render_cli_config(document: Dict[str, Any]) -> str:
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False, width=10_000)


def generate_yaml_preview(
    source: CalendarEndpoint,
    destination: CalendarEndpoint,
    option_states: Dict[str, OptionState],
    oauth_client: OAuthClient,
) -> str:
    """The YAML a job with these options would hand to the CLI, for display."""
    sanitized = build_config_from_state(option_states)
    document = build_cli_config(
        source,
        destination,
        sanitized["transformers"],
        sanitized["filters"],
        oauth_client,
    )
    return render_cli_config(document)
