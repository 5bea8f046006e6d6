# hld_bench/entities.py
from typing import List, Literal, Optional, TypeAlias

from pydantic import BaseModel, ConfigDict, Field


Timestamp: TypeAlias = str

# Current meta.json schema version
META_VERSION = 1
# Current raw-response.json schema version
OUTPUT_VERSION = 1


class WireModel(BaseModel):
    """
    Base for every record that travels as JSON: camelCase on the wire,
    snake_case in Python, both accepted on input.
    """
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# -----------------------
# Problem definition
# -----------------------

class ScoringParameter(WireModel):
    name: str = Field(description="Short name for the scoring dimension")
    description: str = Field(description="What voters should evaluate for this parameter")
    weight: float = Field(ge=1, le=100, description="Relative weight (all weights should sum to 100)")


class Problem(WireModel):
    version: int = Field(
        ge=1,
        description="Schema version of this problem file. Bump when fields change so consumers can detect format.",
    )
    key: str = Field(description="Unique identifier for the problem, e.g. 'design-uber'")
    title: str = Field(description="Human-readable title")
    description: str = Field(description="Full problem statement with context")
    constraints: Optional[List[str]] = Field(default=None, description="Specific constraints or requirements")
    tags: Optional[List[str]] = Field(default=None, description="Categorization tags")
    scoring_parameters: Optional[List[ScoringParameter]] = Field(
        default=None,
        alias="scoringParameters",
        description="Dimensions on which the public can score/vote on each solution. Weights should sum to 100.",
    )


# -----------------------
# HLD structured output
# -----------------------

class Requirements(WireModel):
    functional: List[str] = Field(description="Key functional requirements")
    non_functional: List[str] = Field(
        alias="nonFunctional",
        description="Key non-functional requirements (scalability, latency, etc.)",
    )


class Component(WireModel):
    name: str = Field(description="Component name")
    responsibility: str = Field(description="What this component does")
    tech_choice: str = Field(alias="techChoice", description="Concrete technology or service chosen")
    justification: str = Field(description="Why this technology was chosen")


class DataStore(WireModel):
    store: str = Field(description="Storage system name (e.g. PostgreSQL, Redis, S3)")
    type: Literal["sql", "nosql", "cache", "queue", "blob", "search"] = Field(description="Category of storage")
    justification: str = Field(description="Why this storage was chosen")


class ApiEndpoint(WireModel):
    endpoint: str = Field(description="API endpoint path")
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH", "WS"] = Field(
        description="HTTP method or WS for WebSocket"
    )
    description: str = Field(description="What this endpoint does")


class Tradeoff(WireModel):
    decision: str = Field(description="The architectural decision made")
    pros: List[str] = Field(description="Advantages of this decision")
    cons: List[str] = Field(description="Disadvantages or risks")


class HLDOutput(WireModel):
    title: str = Field(description="Title of the system design")
    overview: str = Field(description="1-2 paragraph executive summary of the design")
    requirements: Requirements
    components: List[Component] = Field(description="Major system components")
    data_flow: str = Field(
        alias="dataFlow",
        description="Mermaid.js sequence or flowchart diagram source showing data flow between components. Must be valid Mermaid syntax.",
    )
    architecture_diagram: str = Field(
        alias="architectureDiagram",
        description="Mermaid.js architecture/block diagram source showing system topology. Must be valid Mermaid syntax.",
    )
    data_storage: List[DataStore] = Field(alias="dataStorage", description="Data storage choices")
    api_design: List[ApiEndpoint] = Field(alias="apiDesign", description="Key API endpoints")
    scalability_strategy: str = Field(
        alias="scalabilityStrategy",
        description="How the system scales horizontally and vertically",
    )
    tradeoffs: List[Tradeoff] = Field(description="Key trade-offs and their reasoning")


# -----------------------
# Model configuration
# -----------------------

class ModelConfig(WireModel):
    id: str = Field(description="Unique model identifier used in CLI, e.g. 'gpt-5.2'")
    provider: str = Field(description="Provider name: openai, anthropic, gemini, or custom")
    model: str = Field(description="Model name to pass to the provider API")
    display_name: str = Field(alias="displayName", description="Human-readable display name")
    env_var: Optional[str] = Field(
        default=None,
        alias="envVar",
        description="Custom env var name for API key (auto-resolved for built-in providers)",
    )
    api_base: Optional[str] = Field(
        default=None,
        alias="apiBase",
        description="Base URL for OpenAI-compatible providers",
    )


class ModelsFile(WireModel):
    models: List[ModelConfig]


# -----------------------
# Run records
# -----------------------

class RunMeta(WireModel):
    version: int = META_VERSION
    problem: str
    model: str
    provider: str
    timestamp: Timestamp
    duration_ms: int = Field(alias="durationMs")
    attempts: int = 1
    constrained_output: bool = Field(default=False, alias="constrainedOutput")
    usage: Optional[dict] = None


class RunResult(BaseModel):
    meta: RunMeta
    output: HLDOutput
