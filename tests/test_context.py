"""
Tests for the handler-facing command context.
"""

import pytest
import pytest_asyncio

from headjack.core.context import CommandContext
from headjack.core.events import normalize
from headjack.core.orchestration.rate_governor import OutboundRateGovernor
from headjack.core.router import ExactCommand

from tests.factories import ALICE, BOT_USER, membership, message

ROOM = "!room:example.org"
OTHER = "!other:example.org"


@pytest_asyncio.fixture
async def governor(fake_client):
    governor = OutboundRateGovernor(fake_client)
    yield governor
    await governor.close()


@pytest.fixture
def context(tracker, governor):
    tracker.apply(normalize(membership(ROOM, "join", target=BOT_USER, sender=BOT_USER)))
    event = normalize(message(ROOM, "!roll 2 6"))
    invocation = ExactCommand("!roll").match(event.body)
    return CommandContext(event, tracker, governor).for_invocation(invocation)


class TestCommandContext:

    def test_reads(self, context):
        assert context.room_id == ROOM
        assert context.sender == ALICE
        assert context.args == ("2", "6")
        assert context.joined_rooms() == frozenset([ROOM])
        assert context.room.room_id == ROOM
        assert context.device(ALICE, "PHONE") is None

    def test_unbound_context_has_no_args(self, tracker, governor):
        event = normalize(message(ROOM, "hello"))
        assert CommandContext(event, tracker, governor).args == ()

    @pytest.mark.asyncio
    async def test_reply_references_trigger(self, context, fake_client):
        await context.reply("rolled 7", markdown=False)

        room_id, _, content, _ = fake_client.sent[0]
        assert room_id == ROOM
        assert content["m.relates_to"]["m.in_reply_to"]["event_id"] == context.event.event_id

    @pytest.mark.asyncio
    async def test_notice_and_react(self, context, fake_client):
        await context.notice("quiet", markdown=False)
        await context.react("🎲")

        notice, reaction = fake_client.sent
        assert notice[2]["msgtype"] == "m.notice"
        assert reaction[1] == "m.reaction"
        assert reaction[2]["m.relates_to"]["key"] == "🎲"

    @pytest.mark.asyncio
    async def test_send_to_other_room(self, context, fake_client):
        await context.send_to(OTHER, "elsewhere", markdown=False)
        assert fake_client.bodies(OTHER) == ["elsewhere"]

    @pytest.mark.asyncio
    async def test_room_tags(self, context, fake_client):
        fake_client.tags[ROOM] = {"org.example.dice.sides=20": {}}

        tags = await context.tags("org.example.dice")
        assert tags.get_value("sides") == "20"
        assert tags.room_id == ROOM
