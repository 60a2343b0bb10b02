"""AgentCrew - multi-agent task orchestration engine.

The entry point is ``agentcrew.orchestration.orchestrator.Orchestrator``.
"""

__version__ = "0.1.0"
