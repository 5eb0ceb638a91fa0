import pytest

from solpulsebot import api, handlers


@pytest.fixture(autouse=True)
def reset_rate_limits():
    api.LIMITERS.clear()
    handlers.user_messages.clear()
    handlers.global_messages.clear()
    yield
