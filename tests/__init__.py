"""
Network Sweep Harness Test Suite

Author: Vítor Eulálio Reis
Copyright (c) 2025

Test organization:
- tests/unit/: Unit tests for individual components
- tests/integration/: Sweeps against throwaway client/server scripts
- tests/regression/: Regression tests for fixed bugs

Run tests:
    pytest                      # All tests
    pytest -m unit              # Unit tests only
    pytest -m integration       # Integration tests only
    pytest -m regression        # Regression tests only
    pytest -k shaping           # Tests matching 'shaping'
"""
