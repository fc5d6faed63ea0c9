"""
Test Suite

Structure:
    tests/
    ├── conftest.py                 # Store, seeded principals, JWT minting, API client
    ├── test_variable_resolver.py   # ${var} interpolation
    ├── test_condition_evaluator.py
    ├── test_permission_guard.py
    ├── test_status_manager.py      # single-active-status invariant
    ├── test_action_executor.py
    ├── test_idempotency.py         # replay, conflict, concurrent double submit
    ├── test_engine.py              # step types, guardrails, suspension, timeouts
    ├── test_run_service.py         # detail, control transitions, audit
    ├── test_scheduler.py
    └── test_api.py                 # HTTP surface

To run tests:
    pytest
"""
