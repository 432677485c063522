"""Configuration for the Concord engine."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Tuning knobs for scheduling, convergence, recovery and chains.

    All durations are in seconds.  Every field has a default so
    ``EngineConfig()`` is a working configuration.
    """

    model_config = {"frozen": True}

    # Scheduler
    max_concurrent_tasks: int = Field(
        default=20, ge=1, description="Upper bound on simultaneously active sessions"
    )
    tick_interval: float = Field(
        default=0.1, gt=0, description="Seconds between ticks when the loop runs via start()"
    )
    no_agent_backoff: float = Field(
        default=2.0, ge=0, description="Delay before re-trying a task no agent could take"
    )
    max_capability_deferrals: int = Field(
        default=3, ge=0, description="Capability-mismatch deferrals allowed before the task fails"
    )

    # Registry
    min_availability: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Agents at or below this availability are skipped"
    )
    agent_max_load: int = Field(
        default=3, ge=1, description="Maximum concurrent tasks held by one agent"
    )
    min_capability_overlap: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Minimum overlap ratio for a capable agent"
    )
    affinity_blend: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Weight of the affinity model in agent scores"
    )
    heat_increment: float = Field(default=0.2, ge=0.0, le=1.0, description="Heat added per assignment")
    heat_decay_rate: float = Field(default=0.1, ge=0.0, description="Exponential heat decay per second")

    # Convergence
    convergence_threshold: float = Field(
        default=0.9, ge=0.0, le=1.0, description="Consensus score that ends reconciliation"
    )
    max_iterations: int = Field(default=10, ge=1, description="Consensus reconciliation rounds")
    task_timeout: float = Field(default=30.0, gt=0, description="Session timeout")

    # Recovery
    max_retry_attempts: int = Field(default=3, ge=0, description="Reassignments before permanent failure")
    retry_backoff: float = Field(default=5.0, ge=0, description="Delay before a reassigned task is pending")
    remap_viability_threshold: float = Field(
        default=0.6, ge=0.0, le=1.0, description="Minimum viability for an alternative path"
    )
    max_remaps: int = Field(default=3, ge=0, description="Remaps allowed per chain")
    path_stability_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Path stability reported as stable above this"
    )

    # Chains
    failure_threshold: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Failed-task ratio that makes a chain unrecoverable"
    )
    adaptive_max_slots: int = Field(default=5, ge=1, description="Slots for adaptive chains at zero load")

    # Events and logging
    event_buffer_size: int = Field(default=1000, ge=1, description="Per-subscription event buffer")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = Field(
        default=None, description="Configure concord logging at engine construction"
    )
    log_format: Literal["text", "json"] = Field(default="text", description="Log record format")

