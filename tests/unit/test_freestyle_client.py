import json

import httpx
import pytest
from pydantic import ValidationError

from pivot.ai import OllamaFreestyleClient, build_brief, parse_suggestion
from pivot.base.config import FreestyleConfig
from pivot.base.errors import ErrorCode, FreestyleCollaboratorError
from pivot.contracts.enums import MutationFamily, ObstacleClassification
from pivot.contracts.models import AttemptRecord, FreestyleSuggestion, ObstacleEvent

GOOD_REPLY = {
    "strategy": "json_unicode_smuggle",
    "mutation_family": "encoding",
    "payload_template": '{"q": "{{payload}}"}',
    "rationale": "The WAF does not decode JSON unicode escapes.",
}


def _event(**overrides):
    fields = dict(
        obstacle_id="obs-1",
        engagement_id="eng-1",
        phase="exploitation",
        terminal_output="x" * 2000,
        attempt_history=[AttemptRecord(strategy=f"encoding:v{i}") for i in range(8)],
    )
    fields.update(overrides)
    return ObstacleEvent(**fields)


def _client(handler, **config):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaFreestyleClient(FreestyleConfig(**config), client=http)


def test_brief_is_bounded():
    event = _event()
    brief = build_brief(event, ObstacleClassification.WAF_BLOCK, event.attempt_history, list(MutationFamily))
    assert len(brief.terminal_output_excerpt) == 800
    assert brief.attempted_mutations == [f"encoding:v{i}" for i in range(3, 8)]
    assert brief.available_families == list(MutationFamily)
    assert brief.phase == "exploitation"


def test_suggestion_requires_placeholder():
    with pytest.raises(ValidationError):
        FreestyleSuggestion(strategy="s", mutation_family="encoding", payload_template="no placeholder", rationale="r")


def test_suggestion_renders_payload():
    suggestion = FreestyleSuggestion(**GOOD_REPLY)
    assert suggestion.render("1'") == '{"q": "1\'"}'


def test_parse_suggestion_strips_code_fences():
    raw = "```json\n" + json.dumps(GOOD_REPLY) + "\n```"
    assert parse_suggestion(raw).strategy == "json_unicode_smuggle"


@pytest.mark.parametrize(
    "raw",
    [
        "not json at all",
        json.dumps({**GOOD_REPLY, "mutation_family": "telepathy"}),
        json.dumps({**GOOD_REPLY, "extra": "field"}),
        json.dumps({k: v for k, v in GOOD_REPLY.items() if k != "payload_template"}),
        json.dumps({k: v for k, v in GOOD_REPLY.items() if k != "rationale"}),
        json.dumps({**GOOD_REPLY, "rationale": ""}),
    ],
)
def test_parse_suggestion_rejects_other_shapes(raw):
    with pytest.raises(FreestyleCollaboratorError) as exc_info:
        parse_suggestion(raw)
    assert exc_info.value.code == ErrorCode.FREESTYLE_INVALID_RESPONSE


@pytest.mark.anyio
async def test_suggest_posts_brief_to_ollama():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": json.dumps(GOOD_REPLY)})

    client = _client(handler, ollama_url="http://ollama.local:11434/", model="tester")
    event = _event()
    brief = build_brief(event, ObstacleClassification.WAF_BLOCK, [], [MutationFamily.ENCODING])
    try:
        suggestion = await client.suggest(brief)
    finally:
        await client.aclose()

    assert suggestion.mutation_family == MutationFamily.ENCODING
    assert seen["url"] == "http://ollama.local:11434/api/generate"
    assert seen["body"]["model"] == "tester"
    assert seen["body"]["format"] == "json"
    assert seen["body"]["stream"] is False
    assert json.loads(seen["body"]["prompt"])["obstacle_classification"] == "WAF_BLOCK"


@pytest.mark.anyio
async def test_http_error_status_is_collaborator_failure():
    client = _client(lambda request: httpx.Response(503, text="loading model"))
    with pytest.raises(FreestyleCollaboratorError) as exc_info:
        await client.suggest(build_brief(_event(), ObstacleClassification.UNKNOWN, [], []))
    assert exc_info.value.code == ErrorCode.FREESTYLE_UNAVAILABLE


@pytest.mark.anyio
async def test_unreachable_ollama_is_collaborator_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(FreestyleCollaboratorError) as exc_info:
        await client.suggest(build_brief(_event(), ObstacleClassification.UNKNOWN, [], []))
    assert exc_info.value.code == ErrorCode.FREESTYLE_UNAVAILABLE


@pytest.mark.anyio
async def test_malformed_reply_is_collaborator_failure():
    client = _client(lambda request: httpx.Response(200, json={"response": '{"strategy": "x"}'}))
    with pytest.raises(FreestyleCollaboratorError) as exc_info:
        await client.suggest(build_brief(_event(), ObstacleClassification.UNKNOWN, [], []))
    assert exc_info.value.code == ErrorCode.FREESTYLE_INVALID_RESPONSE


@pytest.mark.anyio
async def test_empty_reply_is_collaborator_failure():
    client = _client(lambda request: httpx.Response(200, json={"response": ""}))
    with pytest.raises(FreestyleCollaboratorError):
        await client.suggest(build_brief(_event(), ObstacleClassification.UNKNOWN, [], []))
