"""
MCPServer Models

Pydantic models for the MCPServer custom resource spec and status
"""

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Phase(str, Enum):
    """Lifecycle phase published on MCPServer status"""

    PENDING = "Pending"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class ChildKind(str, Enum):
    """Kinds of child resources managed for each MCPServer"""

    DEPLOYMENT = "Deployment"
    SERVICE = "Service"


class ResourceRequirements(BaseModel):
    """Compute resource requests and limits, copied verbatim onto the container"""

    requests: dict[str, str] | None = Field(
        default=None, description="Minimum resources required"
    )
    limits: dict[str, str] | None = Field(default=None, description="Maximum resources allowed")


class MCPServerSpec(BaseModel):
    """Desired state of an MCPServer"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    image: str = Field(..., description="Container image for the MCP server")
    replicas: int = Field(default=1, description="Number of MCP server instances to run")
    port: int = Field(default=8080, description="HTTP port the MCP server listens on")
    secret_name: str = Field(
        default="",
        validation_alias=AliasChoices("secretName", "secretRef", "secret_name"),
        serialization_alias="secretName",
        description="Secret supplying runtime environment",
    )
    resources: ResourceRequirements | None = Field(
        default=None, description="Compute resources for the MCP server"
    )


class Condition(BaseModel):
    """Standard Kubernetes-style status condition"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    status: Literal["True", "False", "Unknown"]
    reason: str = ""
    message: str = ""
    last_transition_time: str = Field(default="", alias="lastTransitionTime")


class MCPServerStatus(BaseModel):
    """Observed state of an MCPServer"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    available_replicas: int = Field(default=0, ge=0, alias="availableReplicas")
    phase: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int | None = Field(default=None, alias="observedGeneration")

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the camelCase layout stored on the resource."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
