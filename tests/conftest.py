import copy
import json

import pytest


VALID_HLD_PAYLOAD = {
    "title": "Ride Sharing Platform",
    "overview": "A regional ride-hailing backend that matches riders with nearby drivers.",
    "requirements": {
        "functional": ["Request a ride", "Track the driver in real time"],
        "nonFunctional": ["p99 matching latency under 2s", "99.95% availability"],
    },
    "components": [
        {
            "name": "Matching Service",
            "responsibility": "Pairs ride requests with available drivers",
            "techChoice": "Go on Kubernetes",
            "justification": "Low latency and cheap horizontal scaling",
        },
    ],
    "dataFlow": "sequenceDiagram\nRider App->>Matching Service: request ride",
    "architectureDiagram": "flowchart TD\nA[Load Balancer (Nginx)] --> B[\"Cache & DB\"]",
    "dataStorage": [
        {"store": "PostgreSQL", "type": "sql", "justification": "Trips need transactions"},
        {"store": "Redis", "type": "cache", "justification": "Driver locations are hot data"},
    ],
    "apiDesign": [
        {"endpoint": "/rides", "method": "POST", "description": "Request a ride"},
        {"endpoint": "/rides/{id}/track", "method": "WS", "description": "Live driver position"},
    ],
    "scalabilityStrategy": "Shard by city, scale matching pods on queue depth.",
    "tradeoffs": [
        {"decision": "Redis for locations", "pros": ["fast"], "cons": ["volatile"]},
    ],
}


class FakeCompletion:
    """
    Scripted completion service: returns (or raises) the queued responses in
    order and records every call it receives.
    """

    def __init__(self, responses, supports_structured_output=False):
        self.responses = list(responses)
        self.supports_structured_output = supports_structured_output
        self.calls = []
        self.last_usage = None

    def complete(self, *, system_prompt, messages, schema=None, max_output_tokens=16384, stream=False):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "schema": schema,
            "max_output_tokens": max_output_tokens,
            "stream": stream,
        })
        if not self.responses:
            raise AssertionError("FakeCompletion: no scripted response left")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def valid_payload():
    return copy.deepcopy(VALID_HLD_PAYLOAD)


@pytest.fixture
def valid_json(valid_payload):
    return json.dumps(valid_payload)


@pytest.fixture
def invalid_json(valid_payload):
    payload = copy.deepcopy(valid_payload)
    del payload["tradeoffs"]
    payload["dataStorage"][0]["type"] = "graph"
    return json.dumps(payload)


@pytest.fixture
def fake_completion():
    return FakeCompletion


@pytest.fixture
def problem():
    from hld_bench.entities import Problem

    return Problem.model_validate({
        "version": 1,
        "key": "design-uber",
        "title": "Design Uber",
        "description": "Design a ride sharing service.",
        "constraints": ["1M daily rides", "Global"],
        "tags": ["realtime"],
    })


@pytest.fixture
def openai_model():
    from hld_bench.entities import ModelConfig

    return ModelConfig(id="gpt-4.1", provider="openai", model="gpt-4.1", display_name="GPT-4.1")
