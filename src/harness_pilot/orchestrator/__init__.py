"""Orchestration control core.

A single operator talks to one orchestrator that routes coding requests to
CLI harnesses (claude, gemini, copilot). The pieces are deliberately small:

- ``modes``: the behavioral state machine, persisted in the meta table.
- ``dispatcher``: plan -> task -> harness, walking the fallback chain only
  when a harness is unavailable.
- ``repository``: SQLite task lifecycle with monotonic status updates.
- ``scheduler``: in-process timers for reminders and polling jobs.
- ``session``: the operator-facing loop tying the above together.
"""
