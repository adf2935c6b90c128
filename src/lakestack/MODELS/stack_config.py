"""
Models for the whole stack registry.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from .service_spec import ServiceSpec


class StackConfig(BaseModel):
    """
    Complete registry for a multi-service stack.
    Equivalent to a parsed compose file plus the shared network name,
    shared credentials and default timeouts, all fixed at load time.
    """
    model_config = ConfigDict(frozen=True)

    services: Dict[str, ServiceSpec]
    network: Optional[str] = None
    volumes: List[str] = []
    credentials: Dict[str, str] = Field(default_factory=dict, repr=False)

    project_dir: str = "."
    compose_file: Optional[str] = None
    action_timeout: float = Field(default=60.0, gt=0.0)
    start_timeout: float = Field(default=120.0, gt=0.0)

    @model_validator(mode="after")
    def _check_names(self) -> "StackConfig":
        for key, spec in self.services.items():
            if key != spec.name:
                raise ValueError(f"service registered as '{key}' is named '{spec.name}'")
        return self
