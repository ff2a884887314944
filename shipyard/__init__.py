"""
Shipyard - Pipeline Scheduler and Rollout Coordinator

Runs pipeline-as-code definitions whose stages call out to existing tools
(mvn, npm, docker, trivy, kubectl) and coordinates Kubernetes rollouts.

Architecture:
- Each module is self-contained with clear interfaces
- Modules are completely replaceable
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- pipeline: Definition model, YAML loading, stage graph
- executor: External tool invocation
- rollout: kubectl client, rollout state machine, drift reconciliation
- runner: Executes one run over the stage graph
- runs: Pipeline definitions and run records
- queue: Run queuing and per-pipeline concurrency slots
- scheduler: Submit, dispatch and cancel runs
- auth: API key authentication
- api: REST API models
"""

__version__ = "1.0.0"
