import pytest

from marketplace.services.conversation_bridge import SqlConversationBridge
from marketplace.utils.errors import ValidationError


def test_same_pair_and_service_reuses_conversation(session_factory, users):
    bridge = SqlConversationBridge(session_factory)
    client, provider = users["client"].id, users["provider"].id

    first = bridge.get_or_create_conversation(client, provider, service_id="svc-1", service_title="DJ set")
    second = bridge.get_or_create_conversation(provider, client, service_id="svc-1")

    assert first.created is True
    assert second.created is False
    assert second.conversation_id == first.conversation_id
    assert second.service_title == "DJ set"
    assert first.participant_ids == tuple(sorted((client, provider)))


def test_other_service_gets_its_own_conversation(session_factory, users):
    bridge = SqlConversationBridge(session_factory)
    client, provider = users["client"].id, users["provider"].id

    one = bridge.get_or_create_conversation(client, provider, service_id="svc-1")
    two = bridge.get_or_create_conversation(client, provider, service_id="svc-2")
    general = bridge.get_or_create_conversation(client, provider)
    general_again = bridge.get_or_create_conversation(provider, client)

    assert len({one.conversation_id, two.conversation_id, general.conversation_id}) == 3
    assert general_again.conversation_id == general.conversation_id


def test_cannot_talk_to_yourself(session_factory, users):
    bridge = SqlConversationBridge(session_factory)
    with pytest.raises(ValidationError):
        bridge.get_or_create_conversation(users["client"].id, users["client"].id)
