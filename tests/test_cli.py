"""Tests for the command line interface."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from click.testing import CliRunner

from comptax_chat.cli import cli
from comptax_chat.models.api import ApiInfo, HistoryEntry, HistoryResponse
from comptax_chat.services.errors import ApiError


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the global structlog configuration untouched by CLI runs."""
    with patch("comptax_chat.cli.setup_logging") as mock:
        yield mock


def mock_api_client(**methods):
    client = MagicMock()
    client.close = AsyncMock()
    for name, value in methods.items():
        setattr(client, name, value)
    return client


@patch("comptax_chat.cli.OhadaApiClient")
def test_info(mock_client_class):
    mock_client_class.return_value = mock_api_client(get_api_info=AsyncMock(return_value=ApiInfo(
        status="ok",
        service="OHADA Expert-Comptable API",
        version="1.0.0",
        endpoints={"stream": "/stream"},
    )))

    result = CliRunner().invoke(cli, ["info"])

    assert result.exit_code == 0
    assert "OHADA Expert-Comptable API 1.0.0" in result.output
    assert "stream: /stream" in result.output


@patch("comptax_chat.cli.OhadaApiClient")
def test_info_error(mock_client_class):
    mock_client_class.return_value = mock_api_client(
        get_api_info=AsyncMock(side_effect=ApiError("An unexpected error occurred. Please try again."))
    )

    result = CliRunner().invoke(cli, ["info"])

    assert result.exit_code == 1


@patch("comptax_chat.cli.OhadaApiClient")
def test_history(mock_client_class):
    client = mock_api_client(get_history=AsyncMock(return_value=HistoryResponse(
        history=[HistoryEntry(query="Qu'est-ce qu'un bilan ?", answer="Le bilan est...", timestamp=1.0)],
        count=1,
    )))
    mock_client_class.return_value = client

    result = CliRunner().invoke(cli, ["history", "--limit", "3"])

    assert result.exit_code == 0
    assert "Qu'est-ce qu'un bilan ?" in result.output
    client.get_history.assert_awaited_once_with(3)


@patch("comptax_chat.cli.OhadaApiClient")
def test_history_empty(mock_client_class):
    mock_client_class.return_value = mock_api_client(get_history=AsyncMock(return_value=HistoryResponse()))

    result = CliRunner().invoke(cli, ["history"])

    assert result.exit_code == 0
    assert "No history." in result.output
