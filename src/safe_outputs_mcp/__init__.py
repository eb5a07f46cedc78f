"""Safe Outputs MCP Server.

A mediation layer that lets an AI agent propose GitHub actions (issues,
comments, labels, pull requests, project boards) from inside a CI run without
holding write credentials. Every proposal is normalized, validated, checked
against the run's policy and admission budget, executed, and audited.

Run with: python -m safe_outputs_mcp
"""

__version__ = "0.4.0"
