import pytest

from character import Character
from config import CommunityConfig, Settings
from memory import MemoryStore


@pytest.fixture
def character():
    return Character(
        name="Catzuya",
        bot_role="catzuya",
        system_instruction="You are Catzuya, a cheerful student.",
        age="19",
        nationality="Japanese",
        gender="girl",
    )


@pytest.fixture
def community():
    return CommunityConfig(
        id="guild1",
        name="Lumis",
        aliases=["lumis server"],
        keyword_triggers=["catzuya"],
        ignore_channels=["bot-spam"],
    )


@pytest.fixture
def settings(tmp_path, community):
    return Settings(
        providers={},
        allowed_servers=[community],
        allowed_users=["u1"],
        enable_random_ignore=False,
        message_buffer_timeout=5.0,
        active_hours_start=0,
        active_hours_end=24,
        memory_batch_size=2,
        data_dir=str(tmp_path),
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path))
