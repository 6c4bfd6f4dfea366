"""Configuration for epicflow runs.

Provides centralized configuration with sensible defaults and environment
variable overrides for scheduling, retries, budgets, git and telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class EpicflowConfig:
    """Configuration for an orchestration run.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Scheduling
    failure_threshold: float = 0.5
    max_story_retries: int = 3
    max_rule_violation_retries: int = 3
    cancellation_check_interval_ms: int = 5000

    # Transient fault retries
    max_transient_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0

    # Git
    git_network_timeout: int = 120
    git_local_timeout: int = 30
    default_base_branch: str = "main"

    # Cost budget
    max_task_cost_usd: float = 1000.0
    max_phase_cost_usd: float = 200.0
    budget_warning_threshold: float = 0.8
    budget_hard_stop: bool = True

    # Agent
    agent_timeout_seconds: int = 1800
    agent_max_turns: int = 50

    # Paths
    workspace_root: Path = field(default_factory=lambda: Path("workspaces"))
    state_dir: Path = field(default_factory=lambda: Path("state"))

    # Notifications
    webhook_url: str | None = field(
        default_factory=lambda: os.getenv("EPICFLOW_WEBHOOK_URL")
    )

    # Telemetry settings
    otlp_enabled: bool = field(
        default_factory=lambda: os.getenv("OTLP_ENABLED", "false").lower() == "true"
    )
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "epicflow"

    @property
    def cancellation_check_interval(self) -> float:
        """Cancellation poll interval in seconds."""
        return self.cancellation_check_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> "EpicflowConfig":
        """Load config with environment variable overrides.

        Environment variables:
            TEAM_FAILURE_THRESHOLD: Circuit breaker failure rate (default: 0.5)
            MAX_STORY_RETRIES: Developer/review iterations per story (default: 3)
            MAX_RULE_VIOLATION_RETRIES: Phase retry-with-feedback bound (default: 3)
            CANCELLATION_CHECK_INTERVAL_MS: Cancellation poll interval (default: 5000)
            EPICFLOW_MAX_TASK_COST: Task budget in USD (default: 1000)
            EPICFLOW_MAX_PHASE_COST: Phase budget in USD (default: 200)
            EPICFLOW_BUDGET_HARD_STOP: Abort when budget exceeded (default: true)
            EPICFLOW_WORKSPACE_ROOT: Root for isolated workspaces (default: workspaces)
            EPICFLOW_STATE_DIR: Directory for events, checkpoints, run state
            EPICFLOW_WEBHOOK_URL: Notification webhook (default: unset)
            OTLP_ENABLED: Export traces and metrics over OTLP (default: false)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        return cls(
            failure_threshold=float(os.getenv("TEAM_FAILURE_THRESHOLD", "0.5")),
            max_story_retries=int(os.getenv("MAX_STORY_RETRIES", "3")),
            max_rule_violation_retries=int(
                os.getenv("MAX_RULE_VIOLATION_RETRIES", "3")
            ),
            cancellation_check_interval_ms=int(
                os.getenv("CANCELLATION_CHECK_INTERVAL_MS", "5000")
            ),
            max_task_cost_usd=float(os.getenv("EPICFLOW_MAX_TASK_COST", "1000")),
            max_phase_cost_usd=float(os.getenv("EPICFLOW_MAX_PHASE_COST", "200")),
            budget_hard_stop=os.getenv("EPICFLOW_BUDGET_HARD_STOP", "true").lower()
            == "true",
            workspace_root=Path(os.getenv("EPICFLOW_WORKSPACE_ROOT", "workspaces")),
            state_dir=Path(os.getenv("EPICFLOW_STATE_DIR", "state")),
            webhook_url=os.getenv("EPICFLOW_WEBHOOK_URL"),
            otlp_enabled=os.getenv("OTLP_ENABLED", "false").lower() == "true",
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
