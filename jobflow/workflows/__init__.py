"""Workflow engine - durable, resumable multi-step executions.

Architecture (bottom-up):
- schemas: execution lifecycle states, API models
- results: StepOutcome, the tagged result of one step
- store: definitions, executions, variables and step audit rows
- advancer: claims an execution and runs its steps through the job executor
"""
