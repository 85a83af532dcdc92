"""Request models for the trigger surface."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .work_items import Partition


class TriggerRequest(BaseModel):
    """Payload accepted by every phase function.

    ``_iteration`` is the relay depth; it is exposed as ``iteration`` in Python.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    workspace_id: str = Field(..., min_length=1)
    job_id: Optional[str] = None
    cursor: Optional[Dict[str, Any]] = None
    partition_id: Optional[int] = Field(default=None, ge=0)
    total_partitions: Optional[int] = Field(default=None, ge=1)
    iteration: int = Field(default=0, ge=0, alias="_iteration")

    @model_validator(mode="after")
    def _check_partition(self) -> "TriggerRequest":
        if (self.partition_id is None) != (self.total_partitions is None):
            raise ValueError("partition_id and total_partitions must be provided together")
        if self.partition_id is not None and self.partition_id >= self.total_partitions:
            raise ValueError("partition_id must be smaller than total_partitions")
        return self

    @property
    def partition(self) -> Partition:
        if self.partition_id is None:
            return Partition.whole()
        return Partition(self.partition_id, self.total_partitions)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise using the wire names (``_iteration``)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class StartPipelineRequest(BaseModel):
    """Payload for ``start_pipeline``."""

    model_config = ConfigDict(extra="ignore")

    workspace_id: str = Field(..., min_length=1)
    pipeline: str = Field(default="email", pattern="^(email|research)$")
    import_mode: str = Field(default="last_1000", pattern="^(last_100|last_1000|full)$")
    reset: bool = True
