"""intentgraph: maintenance of an intent graph of system behaviour.

The graph records what a system does (behaviours, decisions, data,
integrations and views) and how those pieces feed each other. Changes are
proposed as deltas, either by hand or by an LLM agent that explores the
graph through tools.
"""

__version__ = "0.1.0"
