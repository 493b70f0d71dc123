"""Unit tests for the generation client."""

from unittest.mock import Mock

import pytest

from waypoint.generation.client import GenerationClient


def make_message(*texts: str):
    """Helper to build an Anthropic-shaped message."""
    message = Mock()
    message.content = [Mock(text=text) for text in texts] + [Mock(spec=["type"])]
    message.usage = Mock(input_tokens=12, output_tokens=34)
    message.model = "test-model"
    message.stop_reason = "end_turn"
    return message


@pytest.fixture
def anthropic_client():
    return Mock()


class TestGenerationClient:
    """Tests for GenerationClient.generate."""

    @pytest.mark.asyncio
    async def test_generate_joins_text_blocks(self, settings, anthropic_client):
        anthropic_client.messages.create.return_value = make_message('{"a":', " 1}")
        client = GenerationClient(settings=settings, anthropic_client=anthropic_client)

        response = await client.generate("Rank these", system="You rank tasks")

        assert response.text == '{"a": 1}'
        assert response.input_tokens == 12
        assert response.output_tokens == 34
        assert response.stop_reason == "end_turn"

        kwargs = anthropic_client.messages.create.call_args.kwargs
        assert kwargs["model"] == settings.anthropic_model
        assert kwargs["max_tokens"] == settings.anthropic_max_tokens
        assert kwargs["system"] == "You rank tasks"
        assert kwargs["messages"] == [{"role": "user", "content": "Rank these"}]

    @pytest.mark.asyncio
    async def test_generate_without_system(self, settings, anthropic_client):
        anthropic_client.messages.create.return_value = make_message("ok")
        client = GenerationClient(settings=settings, anthropic_client=anthropic_client)

        await client.generate("Rank these", max_tokens=100)

        kwargs = anthropic_client.messages.create.call_args.kwargs
        assert "system" not in kwargs
        assert kwargs["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self, settings, anthropic_client):
        anthropic_client.messages.create.side_effect = ValueError("bad request")
        client = GenerationClient(settings=settings, anthropic_client=anthropic_client)

        with pytest.raises(ValueError, match="bad request"):
            await client.generate("Rank these")

        assert anthropic_client.messages.create.call_count == 1
