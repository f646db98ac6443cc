# tests/test_bulk_insert.py
import logging
import sqlite3
from unittest.mock import Mock

import pytest

from bulkstage.database import sqlite
from bulkstage.exceptions import AdapterReadError, ConfigurationError
from bulkstage.etl import (BulkInsertOperation, BulkLoadOptions, LoggedErrorState, Operation, PipelineExecutor,
                           static_schema)
from bulkstage.logging_utils import ErrorCountHandler


@pytest.fixture
def load_nomads(connect_nomads, nomad_schema, nomad_mappings, error_state):
    """Bulk insert stage for the Air Nomad training table."""
    return BulkInsertOperation('nomads', 'air_nomad_training',
                               schema_resolver=nomad_schema,
                               mappings=nomad_mappings,
                               connect=connect_nomads,
                               error_state=error_state.reader(),
                               name='load_nomads')


class TestBulkInsertInitialization:
    """Test BulkInsertOperation construction and option switches."""

    def test_defaults(self, nomad_schema):
        """Test default timeout, options and state."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema, connect=Mock())

        assert op.timeout == 600
        assert op.options == BulkLoadOptions()
        assert op.mappings == {}
        assert op.last_outcome is None
        assert op.rows_copied == 0
        assert op.name == 'BulkInsertOperation'

    def test_timeout_follows_settings(self, nomad_schema):
        """Test default timeout comes from settings."""
        from bulkstage.defaults import settings
        settings['default_bulk_timeout'] = 900

        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema, connect=Mock())
        assert op.timeout == 900

    def test_empty_target_table_raises(self):
        """Test that a missing target table is rejected up front."""
        with pytest.raises(ConfigurationError, match="target table"):
            BulkInsertOperation('nomads', '', connect=Mock())

    def test_caller_mappings_are_copied(self, nomad_schema, nomad_mappings):
        """Test that preparing mappings never mutates the caller's dict."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings=nomad_mappings, connect=Mock())
        op.prepare_schema()
        op.prepare_mapping()

        assert len(nomad_mappings) == 3
        assert len(op.mappings) == 6

    def test_lock_table_toggle_restores_options(self, load_nomads):
        """Test turning table lock on then off gives back the initial options."""
        initial = load_nomads.options.copy()

        load_nomads.lock_table = True
        assert load_nomads.lock_table
        assert load_nomads.options.table_lock

        load_nomads.lock_table = False
        assert load_nomads.options == initial

    def test_option_toggles_are_idempotent(self, load_nomads):
        """Test that setting an option twice has the same effect as once."""
        load_nomads.keep_nulls = True
        load_nomads.keep_nulls = True
        assert load_nomads.options.enabled() == ['keep_nulls']

        load_nomads.keep_identity = False
        assert not load_nomads.keep_identity
        assert load_nomads.options.enabled() == ['keep_nulls']

    def test_options_are_independent(self, load_nomads):
        """Test each switch only touches its own option."""
        load_nomads.lock_table = True
        load_nomads.keep_identity = True
        load_nomads.keep_nulls = True
        load_nomads.keep_identity = False

        assert load_nomads.options.to_dict() == {'table_lock': True, 'keep_identity': False, 'keep_nulls': True}

    def test_initial_options_are_copied(self, nomad_schema):
        """Test that the operation owns its options."""
        shared = BulkLoadOptions(table_lock=True)
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 options=shared, connect=Mock())
        op.lock_table = False

        assert shared.table_lock is True


class TestPreparation:
    """Test prepare_schema() and prepare_mapping()."""

    def test_identity_fill_keeps_existing_mapping(self):
        """Test that only unmapped schema columns map to themselves."""
        op = BulkInsertOperation('letters', 'letters', schema_resolver=static_schema({'A': int, 'B': str}),
                                 mappings={'A': 'col_a'}, connect=Mock())
        op.prepare_schema()
        op.prepare_mapping()

        assert op.schema == {'A': int, 'B': str}
        assert op.mappings == {'A': 'col_a', 'B': 'B'}

    def test_mapping_preparation_is_repeatable(self):
        """Test that preparing twice leaves the mappings unchanged."""
        op = BulkInsertOperation('letters', 'letters', schema_resolver=static_schema({'A': int, 'B': str}),
                                 mappings={'A': 'col_a'}, connect=Mock())
        for _ in range(2):
            op.prepare_schema()
            op.prepare_mapping()

        assert op.mappings == {'A': 'col_a', 'B': 'B'}

    def test_missing_resolver_raises(self):
        """Test prepare_schema without a resolver."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', connect=Mock())
        with pytest.raises(ConfigurationError, match="no schema resolver"):
            op.prepare_schema()

    def test_empty_schema_raises(self):
        """Test a resolver that returns no columns."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=lambda: {}, connect=Mock())
        with pytest.raises(ConfigurationError, match="no columns"):
            op.prepare_schema()

    def test_mapping_outside_schema_raises(self, nomad_schema):
        """Test a mapping for a field the schema does not declare."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings={'glider_color': 'glider'}, connect=Mock())
        op.prepare_schema()
        with pytest.raises(ConfigurationError, match="glider_color"):
            op.prepare_mapping()

    def test_subclass_can_override_prepare_schema(self, connect_nomads, airbender_records, fetch_nomads):
        """Test a subclass that declares its schema without a resolver."""

        class LoadNomadIds(BulkInsertOperation):
            def prepare_schema(self):
                self.schema = {'trainee_id': str, 'monk_name': str}

        op = LoadNomadIds('nomads', 'air_nomad_training', mappings={'trainee_id': 'nomad_id', 'monk_name': 'name'},
                          connect=connect_nomads)
        assert op.run(airbender_records) == 4

        nomads = fetch_nomads()
        assert [n['name'] for n in nomads] == ['Aang', 'Monk Gyatso', 'Jinora', 'Tenzin']
        assert all(n['temple'] == 'Southern Air Temple' for n in nomads)


class TestBulkInsertCommit:
    """Test loads that commit."""

    def test_rows_land_per_mappings(self, load_nomads, airbender_records, fetch_nomads):
        """Test every row is inserted with mapped and identity columns."""
        assert load_nomads.run(airbender_records) == 4
        assert load_nomads.last_outcome == 'committed'
        assert load_nomads.rows_copied == 4

        nomads = fetch_nomads()
        assert len(nomads) == 4
        aang = nomads[0]
        assert aang.nomad_id == 'AANG001'
        assert aang.name == 'Aang'
        assert aang.temple == 'Southern Air Temple'
        assert aang.airbending_level == 10
        assert aang.sky_bison == 'Appa'
        assert aang.meditation_score == 8.5

    def test_execute_yields_nothing(self, load_nomads, airbender_records):
        """Test the stage is a sink."""
        assert list(load_nomads.execute(airbender_records)) == []
        assert load_nomads.rows_copied == 4

    def test_execute_is_lazy(self, load_nomads, connect_nomads, airbender_records):
        """Test no connection is opened until the result is iterated."""
        stream = load_nomads.execute(airbender_records)
        assert connect_nomads.opened == []

        list(stream)
        assert len(connect_nomads.opened) == 1

    def test_generator_rows_consumed_once(self, load_nomads, airbender_records, fetch_nomads):
        """Test a one-shot generator source loads every row exactly once."""
        pulled = []

        def trainees():
            for record in airbender_records:
                pulled.append(record['trainee_id'])
                yield record

        load_nomads.run(trainees())

        assert pulled == ['AANG001', 'TENZIN001', 'JINORA001', 'GYATSO001']
        assert len(fetch_nomads()) == 4

    def test_small_batches(self, connect_nomads, nomad_schema, nomad_mappings, airbender_records, fetch_nomads):
        """Test loads that span several round trips."""
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings=nomad_mappings, batch_size=1, connect=connect_nomads)
        assert op.run(airbender_records) == 4
        assert len(fetch_nomads()) == 4

    def test_none_uses_column_default(self, load_nomads, airbender_records, fetch_nomads):
        """Test keep_nulls off lets NOT NULL defaults fill in None values."""
        airbender_records[1]['home_temple'] = None

        load_nomads.run(airbender_records)

        tenzin = [n for n in fetch_nomads() if n.nomad_id == 'TENZIN001'][0]
        assert tenzin.temple == 'Southern Air Temple'

    def test_keep_nulls_inserts_null(self, load_nomads, airbender_records, fetch_nomads):
        """Test keep_nulls on sends None as NULL."""
        load_nomads.keep_nulls = True
        load_nomads.run(airbender_records)

        gyatso = [n for n in fetch_nomads() if n.nomad_id == 'GYATSO001'][0]
        assert gyatso.sky_bison is None

    def test_empty_input_commits(self, load_nomads, fetch_nomads):
        """Test an empty row sequence commits an empty load."""
        assert load_nomads.run([]) == 0
        assert load_nomads.last_outcome == 'committed'
        assert fetch_nomads() == []

    def test_commit_trace_logged_at_debug(self, load_nomads, airbender_records, caplog):
        """Test commit messages are logged at DEBUG."""
        caplog.set_level(logging.DEBUG, logger='bulkstage')
        load_nomads.run(airbender_records)

        messages = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert (logging.DEBUG, 'Committing load_nomads') in messages
        assert (logging.DEBUG, 'Committed load_nomads') in messages

    def test_connection_released(self, load_nomads, connect_nomads, airbender_records):
        """Test the connection is closed after the load."""
        load_nomads.run(airbender_records)

        db = connect_nomads.opened[0]
        with pytest.raises(sqlite3.ProgrammingError):
            db._connection.execute("SELECT 1")

    def test_mapped_letters(self, nomads_db_path, connect_nomads):
        """Test a schema mapped partly by name and partly by identity."""
        with sqlite(str(nomads_db_path)) as db:
            db.cursor().execute("CREATE TABLE letters (col_a INTEGER, B TEXT)")
            db.commit()

        op = BulkInsertOperation('nomads', 'letters', schema_resolver=static_schema({'A': int, 'B': str}),
                                 mappings={'A': 'col_a'}, connect=connect_nomads)
        op.run([{'A': 1, 'B': 'air'}, {'A': 2, 'B': 'water'}])

        with sqlite(str(nomads_db_path)) as db:
            cursor = db.cursor()
            cursor.execute("SELECT col_a, B FROM letters ORDER BY col_a")
            assert [tuple(r.values()) for r in cursor.fetchall()] == [(1, 'air'), (2, 'water')]


class TestBulkInsertRollback:
    """Test loads rolled back because of pipeline errors elsewhere."""

    def test_error_during_stream_rolls_back(self, load_nomads, airbender_records, error_state, fetch_nomads):
        """Test an error recorded mid-stream leaves the target unchanged."""

        def trainees():
            yield from airbender_records[:2]
            error_state.record(ValueError('Scroll validation failed'), stage='validate_scrolls')
            yield from airbender_records[2:]

        assert load_nomads.run(trainees()) == 4
        assert load_nomads.last_outcome == 'rolled_back'
        assert fetch_nomads() == []

    def test_rollback_trace_logged_at_info(self, load_nomads, airbender_records, error_state, caplog):
        """Test the rollback message pair is logged at INFO."""
        caplog.set_level(logging.INFO, logger='bulkstage')
        error_state.record(RuntimeError('Fire Nation raid'), stage='extract_scrolls')

        load_nomads.run(airbender_records)

        messages = [(r.levelno, r.getMessage()) for r in caplog.records]
        rolling = messages.index((logging.INFO, 'Rolling back transaction in load_nomads'))
        rolled = messages.index((logging.INFO, 'Rolled back transaction in load_nomads'))
        assert rolling < rolled
        assert not any(level >= logging.ERROR for level, _ in messages)

    def test_empty_input_rolls_back(self, load_nomads, error_state):
        """Test an empty load still follows the pipeline state."""
        error_state.record(RuntimeError('upstream failure'))

        assert load_nomads.run([]) == 0
        assert load_nomads.last_outcome == 'rolled_back'

    def test_next_execution_commits_after_reset(self, load_nomads, airbender_records, error_state, fetch_nomads):
        """Test the decision is made again on every execution."""
        error_state.record(RuntimeError('first run failed'))
        load_nomads.run(airbender_records)
        assert fetch_nomads() == []

        error_state.reset()
        load_nomads.run(airbender_records)
        assert load_nomads.last_outcome == 'committed'
        assert len(fetch_nomads()) == 4

    def test_logged_errors_roll_back(self, connect_nomads, nomad_schema, nomad_mappings, airbender_records,
                                     fetch_nomads):
        """Test an ERROR logged by another stage rolls the load back."""
        handler = ErrorCountHandler()
        root = logging.getLogger()
        root.addHandler(handler)
        try:
            op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                     mappings=nomad_mappings, connect=connect_nomads,
                                     error_state=LoggedErrorState(handler))

            def trainees():
                for record in airbender_records:
                    if record['sky_bison'] is None:
                        logging.getLogger('tests.validate').error(f"{record['trainee_id']} has no sky bison")
                        continue
                    yield record

            assert op.run(trainees()) == 3
        finally:
            root.removeHandler(handler)

        assert op.last_outcome == 'rolled_back'
        assert fetch_nomads() == []


class TestBulkInsertFailures:
    """Test failures inside the stage."""

    def test_none_rows_raises_before_connecting(self, nomad_schema):
        """Test a null row sequence is rejected with no connection opened."""
        connect = Mock()
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema, connect=connect)

        with pytest.raises(ValueError, match="null row sequence"):
            op.execute(None)
        connect.assert_not_called()

    def test_configuration_error_before_connecting(self, nomad_schema):
        """Test mapping problems surface before any connection is opened."""
        connect = Mock()
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings={'glider_color': 'glider'}, connect=connect)

        with pytest.raises(ConfigurationError):
            op.run([])
        connect.assert_not_called()
        assert op.last_outcome == 'failed'

    def test_missing_field_rolls_back(self, connect_nomads, nomad_schema, nomad_mappings, airbender_records,
                                      fetch_nomads):
        """Test a row missing a mapped field aborts the load with no rows kept."""
        del airbender_records[2]['monk_name']
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings=nomad_mappings, batch_size=1, connect=connect_nomads)

        with pytest.raises(AdapterReadError, match="monk_name"):
            op.run(airbender_records)

        assert op.last_outcome == 'failed'
        assert fetch_nomads() == []

    def test_database_error_propagates(self, load_nomads, airbender_records, fetch_nomads, caplog):
        """Test driver errors are re-raised after rollback and logged with the table."""
        load_nomads.keep_nulls = True
        airbender_records[3]['home_temple'] = None

        with pytest.raises(sqlite3.IntegrityError):
            load_nomads.run(airbender_records)

        assert load_nomads.last_outcome == 'failed'
        assert fetch_nomads() == []
        errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
        assert any('load_nomads' in m and 'air_nomad_training' in m for m in errors)

    def test_propagated_error_names_stage_and_table(self, load_nomads, airbender_records):
        """Test the re-raised error keeps its type and carries the stage and table."""
        del airbender_records[1]['monk_name']

        with pytest.raises(AdapterReadError) as excinfo:
            load_nomads.run(airbender_records)

        assert excinfo.value.__notes__ == ['load_nomads failed loading air_nomad_training']

    def test_connect_failure_propagates(self, nomad_schema):
        """Test a connection failure reaches the caller unchanged."""
        connect = Mock(side_effect=ConnectionError('Ba Sing Se is unreachable'))
        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema, connect=connect)

        with pytest.raises(ConnectionError, match='Ba Sing Se'):
            op.run([])
        connect.assert_called_once_with('nomads')
        assert op.last_outcome == 'failed'

    def test_failed_load_releases_connection(self, load_nomads, connect_nomads, airbender_records):
        """Test the connection is closed when the load fails."""
        del airbender_records[0]['sky_bison']

        with pytest.raises(AdapterReadError):
            load_nomads.run(airbender_records)

        with pytest.raises(sqlite3.ProgrammingError):
            connect_nomads.opened[0]._connection.execute("SELECT 1")

    def test_timeout_raises(self, connect_nomads, nomad_schema, nomad_mappings, airbender_records, fetch_nomads):
        """Test a load that runs past its timeout fails and rolls back."""
        import time
        from bulkstage.exceptions import BulkCopyTimeout

        def slow_trainees():
            for record in airbender_records:
                time.sleep(0.02)
                yield record

        op = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                 mappings=nomad_mappings, timeout=0.01, batch_size=1, connect=connect_nomads)

        with pytest.raises(BulkCopyTimeout):
            op.run(slow_trainees())
        assert fetch_nomads() == []


class TestBulkInsertInPipeline:
    """Test the stage driven by PipelineExecutor."""

    class CleanNames(Operation):
        def execute(self, rows):
            for row in rows:
                row = dict(row)
                row['monk_name'] = row['monk_name'].strip().title()
                yield row

    class ExplodeOnGyatso(Operation):
        def execute(self, rows):
            for row in rows:
                if row['trainee_id'] == 'GYATSO001':
                    raise RuntimeError('Comet arrived early')
                yield row

    def test_pipeline_commits(self, connect_nomads, nomad_schema, nomad_mappings, airbender_records, fetch_nomads):
        """Test executor, transform and load together."""
        airbender_records[0]['monk_name'] = '  aang '
        load = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                   mappings=nomad_mappings, connect=connect_nomads)
        executor = PipelineExecutor()

        produced = executor.execute('load_nomads', [self.CleanNames(), load], rows=airbender_records)

        assert produced == 0
        assert load.last_outcome == 'committed'
        assert not executor.has_errors
        assert fetch_nomads()[0].name == 'Aang'

    def test_upstream_failure_rolls_back_and_records(self, connect_nomads, nomad_schema, nomad_mappings,
                                                     airbender_records, fetch_nomads):
        """Test an upstream exception aborts the load and lands in the error state."""
        load = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                   mappings=nomad_mappings, batch_size=1, connect=connect_nomads)
        executor = PipelineExecutor()

        with pytest.raises(RuntimeError, match='Comet'):
            executor.execute('load_nomads', [self.ExplodeOnGyatso(), load], rows=airbender_records)

        assert executor.has_errors
        assert isinstance(executor.error_state.errors[0].error, RuntimeError)
        assert load.last_outcome == 'failed'
        assert fetch_nomads() == []

    def test_earlier_failure_rolls_back_later_load(self, connect_nomads, nomad_schema, nomad_mappings,
                                                   airbender_records, fetch_nomads):
        """Test a failure in an earlier run of the same pipeline state rolls back the next load."""
        executor = PipelineExecutor()
        with pytest.raises(RuntimeError):
            executor.execute('extract', [self.ExplodeOnGyatso()], rows=airbender_records)

        load = BulkInsertOperation('nomads', 'air_nomad_training', schema_resolver=nomad_schema,
                                   mappings=nomad_mappings, connect=connect_nomads)
        executor.execute('load_nomads', [load], rows=airbender_records[:3])

        assert load.last_outcome == 'rolled_back'
        assert fetch_nomads() == []
