"""
Advisor Agents

Per-user autonomous agents for a financial-advisor assistant.

Philosophy:
- One long-lived worker per user, strictly serialized
- Every fault is classified, logged and turned into a reply or a Task
- Retrieval grounds every answer in the user's emails, contacts and notes
- Standing instructions react to external events without being asked

Usage:
    from advisor.common import load_config
    from advisor.agent import WorkerRegistry, build_services
    from advisor.retriever import RetrievalService
"""

__version__ = "0.1.0"
