import pytest
import yaml

from kitchen_sync.calendarsync.cli_config import (
    CalendarEndpoint,
    CliConfigError,
    OAuthClient,
    build_cli_config,
    extract_config_items,
    generate_yaml_preview,
    map_to_cli_format,
    render_cli_config,
)
from kitchen_sync.calendarsync.transformers import create_default_option_state

SOURCE = CalendarEndpoint(calendar_id="work@group.calendar.google.com", account_id="work@example.com")
DESTINATION = CalendarEndpoint(calendar_id="primary", account_id="me@example.com", time_zone="Europe/Warsaw")
OAUTH = OAuthClient(client_id="client-id", client_secret="client-secret")


def test_document_shape():
    document = build_cli_config(
        SOURCE,
        DESTINATION,
        [{"type": "titleTemplateTransformer", "template": "[Synced] {{title}}"}],
        [{"type": "timeWindowFilter", "pastDays": 7, "futureDays": 30}],
        OAUTH,
        auth_storage_path="/run/calendarsync/auth-storage.yaml",
    )

    assert document == {
        "sync": {
            "start": {"identifier": "MonthStart", "offset": -1},
            "end": {"identifier": "MonthEnd", "offset": 1},
        },
        "auth": {"storage_mode": "yaml", "config": {"path": "/run/calendarsync/auth-storage.yaml"}},
        "source": {
            "adapter": {
                "type": "google",
                "calendar": "work@group.calendar.google.com",
                "oAuth": {"clientId": "client-id", "clientKey": "client-secret"},
            }
        },
        "sink": {
            "adapter": {
                "type": "google",
                "calendar": "primary",
                "oAuth": {"clientId": "client-id", "clientKey": "client-secret"},
            }
        },
        "transformations": [{"name": "ReplaceTitle", "config": {"NewTitle": "[Synced] {{title}}"}}],
        "filters": [{"name": "TimeFrame", "config": {"HourStart": 0, "HourEnd": 24}}],
        "updateConcurrency": 1,
    }


def test_empty_sections_are_omitted():
    document = build_cli_config(SOURCE, DESTINATION, [], [], OAUTH)

    assert "transformations" not in document
    assert "filters" not in document
    assert document["auth"]["config"]["path"] == "./auth-storage.yaml"


@pytest.mark.parametrize("oauth", [OAuthClient(None, "secret"), OAuthClient("id", ""), OAuthClient(None, None)])
def test_oauth_client_is_required(oauth):
    with pytest.raises(CliConfigError) as excinfo:
        build_cli_config(SOURCE, DESTINATION, [], [], oauth)

    assert excinfo.value.code == "MISSING_OAUTH_CLIENT"


def test_unknown_items_are_dropped():
    items = [
        {"type": "descriptionNoteTransformer", "note": "hi"},
        {"type": "colorTransformer", "color": "red"},
        "allDayEventFilter",
        {"type": "allDayEventFilter", "exclude": True},
    ]

    assert map_to_cli_format(items) == [{"name": "KeepDescription"}, {"name": "AllDayEvents"}]


def test_title_template_falls_back_to_the_original_title():
    assert map_to_cli_format([{"type": "titleTemplateTransformer"}]) == [
        {"name": "ReplaceTitle", "config": {"NewTitle": "{{title}}"}}
    ]


@pytest.mark.parametrize("job_config", [None, [], {"transformers": "titleTemplate"}, {"filters": []}])
def test_malformed_job_config_yields_no_items(job_config):
    assert extract_config_items(job_config, "transformers") == []


def test_rendered_yaml_keeps_key_order():
    rendered = render_cli_config(build_cli_config(SOURCE, DESTINATION, [], [], OAUTH))

    assert [line for line in rendered.splitlines() if not line.startswith(" ")] == [
        "sync:",
        "auth:",
        "source:",
        "sink:",
        "updateConcurrency: 1",
    ]


def test_preview_reflects_option_state():
    preview = yaml.safe_load(generate_yaml_preview(SOURCE, DESTINATION, create_default_option_state(), OAUTH))

    assert preview["filters"] == [{"name": "AllDayEvents"}]
    assert "transformations" not in preview
