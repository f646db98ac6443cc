# tests/conftest.py
"""
Shared test fixtures and configuration for pytest.
"""

import copy
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from bulkstage.config import set_config_file
from bulkstage.database import sqlite
from bulkstage.defaults import settings
from bulkstage.etl import PipelineErrorState, static_schema

TEST_ENCRYPTION_KEY = '2YvTXI9DHQPy4d6-ZC9NxcypvLMsJ94OBdmoHyjmwbM='


@pytest.fixture(autouse=True)
def setup_test_config():
    """Point every test at tests/test.yml and the test encryption key, then restore global settings."""
    saved_settings = copy.deepcopy(settings)
    set_config_file(str(Path(__file__).parent / 'test.yml'))

    with patch.dict(os.environ, {'BULKSTAGE_ENCRYPTION_KEY': TEST_ENCRYPTION_KEY}):
        yield

    set_config_file(None)
    settings.clear()
    settings.update(saved_settings)


@pytest.fixture
def nomads_db_path(tmp_path):
    """SQLite file with an empty Air Nomad training table."""
    path = tmp_path / 'nomads.db'
    db = sqlite(str(path))
    cursor = db.cursor()
    cursor.execute("""
                   CREATE TABLE air_nomad_training
                   (
                       nomad_id         TEXT PRIMARY KEY,
                       name             TEXT NOT NULL,
                       temple           TEXT NOT NULL DEFAULT 'Southern Air Temple',
                       airbending_level INTEGER,
                       sky_bison        TEXT,
                       meditation_score REAL
                   )
                   """)
    db.commit()
    db.close()
    return path


@pytest.fixture
def fetch_nomads(nomads_db_path):
    """Read back air_nomad_training, ordered by nomad_id, on a fresh connection."""
    def fetch():
        with sqlite(str(nomads_db_path)) as db:
            cursor = db.cursor()
            cursor.execute("SELECT * FROM air_nomad_training ORDER BY nomad_id")
            return cursor.fetchall()

    return fetch


@pytest.fixture
def connect_nomads(nomads_db_path):
    """
    Connection provider for the nomads database.

    Every connection handed out is kept in ``connect_nomads.opened`` so tests
    can check that connections were requested (or not).
    """
    def connect(name):
        db = sqlite(str(nomads_db_path))
        db.name = name
        connect.opened.append(db)
        return db

    connect.opened = []
    return connect


@pytest.fixture
def nomad_schema():
    """Schema of the incoming Air Nomad trainee rows."""
    return static_schema({
        'trainee_id': str,
        'monk_name': str,
        'home_temple': str,
        'airbending_level': int,
        'sky_bison': str,
        'meditation_score': float,
    })


@pytest.fixture
def nomad_mappings():
    """Fields whose destination column is named differently."""
    return {'trainee_id': 'nomad_id', 'monk_name': 'name', 'home_temple': 'temple'}


@pytest.fixture
def airbender_records():
    """Air Nomad trainees as they arrive from upstream stages."""
    return [
        {'trainee_id': 'AANG001', 'monk_name': 'Aang', 'home_temple': 'Southern Air Temple',
         'airbending_level': 10, 'sky_bison': 'Appa', 'meditation_score': 8.5},
        {'trainee_id': 'TENZIN001', 'monk_name': 'Tenzin', 'home_temple': 'Air Temple Island',
         'airbending_level': 9, 'sky_bison': 'Oogi', 'meditation_score': 9.8},
        {'trainee_id': 'JINORA001', 'monk_name': 'Jinora', 'home_temple': 'Air Temple Island',
         'airbending_level': 8, 'sky_bison': 'Pepper', 'meditation_score': 9.9},
        {'trainee_id': 'GYATSO001', 'monk_name': 'Monk Gyatso', 'home_temple': 'Southern Air Temple',
         'airbending_level': 9, 'sky_bison': None, 'meditation_score': 9.5},
    ]


@pytest.fixture
def error_state():
    """Pipeline error state the tests write to directly."""
    return PipelineErrorState()

