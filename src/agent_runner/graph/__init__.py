"""Issue graph: tasks, issues, dependency resolution and the durable event log.

Readiness is computed on demand from the stored issue list of a task. The
graph manager is the only component that changes issue status; everything
else proposes transitions by publishing events it applies.
"""
