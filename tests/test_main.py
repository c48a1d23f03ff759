from unittest.mock import AsyncMock, MagicMock

import pytest

import main
from services.endpoint_pool import NoHealthyEndpointsError


@pytest.fixture
def dead_pool(monkeypatch):
    pool = MagicMock()
    pool.initialize = AsyncMock(
        side_effect=NoHealthyEndpointsError("None of 2 RPC candidates answered for chain id 137")
    )
    monkeypatch.setattr(main, 'EndpointPool', MagicMock(return_value=pool))
    return pool


@pytest.fixture
def dispatcher_cls(monkeypatch):
    dispatcher = MagicMock()
    dispatcher.send_error_alert = AsyncMock(return_value=True)
    cls = MagicMock(return_value=dispatcher)
    monkeypatch.setattr(main, 'TelegramAlertDispatcher', cls)
    return cls


def make_config():
    return MagicMock(
        rpc_candidates=['http://rpc-a', 'http://rpc-b'],
        telegram_chat_id='mock_chat_id',
        telegram_enabled=True,
    )


@pytest.mark.asyncio
async def test_startup_without_healthy_endpoints_alerts_before_exiting(dead_pool, dispatcher_cls):
    application = MagicMock()
    application.bot_data = {}

    with pytest.raises(SystemExit) as excinfo:
        await main.build_scanner(make_config(), MagicMock(), [], [], MagicMock(), application)

    assert excinfo.value.code == 1
    dispatcher_cls.assert_called_once_with(application.bot, 'mock_chat_id', enabled=True)
    dispatcher_cls.return_value.send_error_alert.assert_awaited_once_with(
        "No healthy RPC endpoints", "None of 2 RPC candidates answered for chain id 137"
    )
    assert application.bot_data == {}


@pytest.mark.asyncio
async def test_cli_startup_without_healthy_endpoints_still_reports(dead_pool, dispatcher_cls):
    with pytest.raises(SystemExit):
        await main.build_scanner(make_config(), MagicMock(), [], [], MagicMock())

    dispatcher_cls.assert_called_once_with(None, 'mock_chat_id', enabled=True)
    dispatcher_cls.return_value.send_error_alert.assert_awaited_once()
