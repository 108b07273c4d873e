"""Deferred job scheduler.

Architecture (bottom-up):
- schemas: job lifecycle enums, API models
- scheduling: delay parsing, cron occurrences, backoff, request validation
- http_client: outbound HTTP with an owned, self-refreshing credential
- sandbox: isolated script execution behind the ScriptRunner protocol
- job_executor: dispatches a descriptor to HTTP, routine or script
- job_store: claims, attempt rows and state transitions for scheduled jobs
- job_runner: one poll cycle (recover, claim, execute, bookkeep)
"""
