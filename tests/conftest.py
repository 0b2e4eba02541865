"""Pytest configuration and shared fixtures."""

import pytest


@pytest.fixture
def team_amounts():
    """Two teams, one amount each."""
    return [
        {"team": "X", "amt": 10},
        {"team": "Y", "amt": 20},
    ]


@pytest.fixture
def quarterly_sales():
    return [
        {"team": "X", "quarter": "Q1", "amt": 10},
        {"team": "X", "quarter": "Q2", "amt": 5},
        {"team": "Y", "quarter": "Q1", "amt": 20},
    ]


@pytest.fixture
def regional_sales():
    return [
        {"region": "N", "team": "X", "amt": 1},
        {"region": "N", "team": "Y", "amt": 2},
        {"region": "S", "team": "X", "amt": 4},
    ]


@pytest.fixture
def amount_spec():
    return {"rows": ["team"], "values": [{"field": "amt", "aggregation": "sum"}]}
