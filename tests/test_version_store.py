"""
Tests for the bitemporal version store over the in-memory backend.
"""

import threading

import pytest

from kgmemory.models.core import EntityEmbedding
from kgmemory.models.errors import (DanglingEndpointError, DuplicateKeyError, InconsistentStateError, NotFoundError,
                                    ValidationError, VersionConflictError)
from kgmemory.services.version_store import VersionStore, sanitize_label

from conftest import T0


class TestSanitizeLabel:
    """Tests for structural label normalization."""

    def test_plain_identifier_is_unchanged(self):
        assert sanitize_label('Person') == 'Person'

    def test_invalid_characters_become_underscores(self):
        assert sanitize_label('my type-2') == 'my_type_2'

    def test_leading_digit_gets_prefix(self):
        assert sanitize_label('2024') == 'T_2024'

    def test_leading_underscore_gets_prefix(self):
        assert sanitize_label('_hidden') == 'T__hidden'

    def test_non_ascii_letters_are_replaced(self):
        assert sanitize_label('Café') == 'Caf_'

    def test_empty_maps_to_unknown(self):
        assert sanitize_label('') == 'Unknown'
        assert sanitize_label(None) == 'Unknown'


class TestCreateEntities:
    """Tests for entity creation."""

    def test_creates_first_version(self, store):
        [entity] = store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['likes tea']}])

        assert entity.version == 1
        assert entity.valid_from == T0
        assert entity.valid_to is None
        assert entity.created_at == entity.updated_at == T0
        assert entity.changed_by == 'tester'
        assert entity.observations == ['likes tea']
        assert entity.labels == ['Person']
        assert entity.id

    def test_labels_include_sanitized_type_and_explicit_labels(self, store):
        [entity] = store.create_entities([{'name': 'Roadmap', 'entityType': 'Project Plan', 'labels': ['urgent', '2024']}])

        assert entity.labels == ['Project_Plan', 'T_2024', 'urgent']

    def test_observations_are_normalized(self, store):
        created = store.create_entities([
            {'name': 'A', 'entityType': 'Thing', 'observations': '["one", "two"]'},
            {'name': 'B', 'entityType': 'Thing', 'observations': '   '},
            {'name': 'C', 'entityType': 'Thing', 'observations': 'single'},
        ])

        assert [entity.observations for entity in created] == [['one', 'two'], [], ['single']]

    def test_duplicate_name_rejects_whole_batch(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        with pytest.raises(DuplicateKeyError, match='Alice'):
            store.create_entities([{'name': 'Bob', 'entityType': 'Person'}, {'name': 'Alice', 'entityType': 'Person'}])

        assert store.open_nodes(['Bob']).entities == []

    def test_repeated_name_in_batch_is_invalid(self, store):
        with pytest.raises(ValidationError):
            store.create_entities([{'name': 'Alice', 'entityType': 'Person'}, {'name': 'Alice', 'entityType': 'Robot'}])

    @pytest.mark.parametrize('spec', [
        {'name': '', 'entityType': 'Person'},
        {'name': 'Alice'},
        {'name': 'Alice', 'entityType': 'Person', 'metadata': ['not', 'a', 'mapping']},
        {'name': 'Alice', 'entityType': 'Person', 'labels': 'solo'},
    ])
    def test_malformed_specs_are_rejected(self, store, spec):
        with pytest.raises(ValidationError):
            store.create_entities([spec])

    def test_recreating_deleted_entity_continues_versions(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        clock.advance(10)
        store.delete_entities(['Alice'])
        clock.advance(10)

        [entity] = store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        assert entity.version == 2
        assert entity.created_at == T0
        assert [version.version for version in store.get_entity_history('Alice')] == [1, 2]


class TestUpdateEntity:
    """Tests for copy-on-write entity updates."""

    def test_update_closes_previous_and_opens_successor(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['likes tea']}])
        later = clock.advance(1000)

        updated = store.update_entity('Alice', {'observations': ['likes coffee']})

        assert updated.version == 2
        assert updated.valid_from == later
        assert updated.created_at == T0
        assert updated.updated_at == later
        first, second = store.get_entity_history('Alice')
        assert first.valid_to == second.valid_from == later
        assert first.observations == ['likes tea']
        assert second.valid_to is None

    def test_metadata_merge_is_shallow(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'metadata': {'a': {'x': 1}, 'b': 1}}])
        clock.advance()

        updated = store.update_entity('Alice', {'metadata': {'a': {'y': 2}}})

        assert updated.metadata == {'a': {'y': 2}, 'b': 1}

    def test_type_change_swaps_type_label_and_keeps_others(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'labels': ['vip']}])
        clock.advance()

        updated = store.update_entity('Alice', {'entityType': 'Robot'})

        assert updated.entity_type == 'Robot'
        assert updated.labels == ['Robot', 'vip']

    def test_name_is_immutable(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        with pytest.raises(ValidationError):
            store.update_entity('Alice', {'name': 'Alicia'})

    def test_unknown_fields_are_rejected(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        with pytest.raises(ValidationError):
            store.update_entity('Alice', {'version': 7})

    def test_missing_entity(self, store):
        with pytest.raises(NotFoundError):
            store.update_entity('Nobody', {'observations': []})

    def test_embedding_kept_only_while_text_is_unchanged(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['likes tea']}])
        embedding = EntityEmbedding(vector=[1.0, 0.0], model='fake', last_updated=T0)
        assert store.set_embedding('Alice', 1, embedding)
        clock.advance()

        same_text = store.update_entity('Alice', {'observations': ['likes tea']})
        clock.advance()
        new_text = store.update_entity('Alice', {'observations': ['likes coffee']})

        assert same_text.embedding == embedding
        assert new_text.embedding is None

    def test_set_embedding_ignores_superseded_version(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        clock.advance()
        store.update_entity('Alice', {'observations': ['new']})

        assert not store.set_embedding('Alice', 1, EntityEmbedding(vector=[1.0], model='fake', last_updated=T0))

    def test_add_observations_appends_and_keeps_duplicates(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['a']}])
        clock.advance()

        updated = store.add_observations('Alice', ['a', 'b'])

        assert updated.observations == ['a', 'a', 'b']
        assert updated.version == 2

    def test_concurrent_updates_produce_gap_free_versions(self, backend, clock):
        store = VersionStore(backend, clock=clock, changed_by='tester', max_update_attempts=1000)
        store.create_entities([{'name': 'Counter', 'entityType': 'Thing'}])
        errors = []

        def worker(worker_id):
            for step in range(5):
                try:
                    store.add_observations('Counter', [f'{worker_id}-{step}'])
                except VersionConflictError as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(i, )) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        history = store.get_entity_history('Counter')
        assert errors == []
        assert [version.version for version in history] == list(range(1, 42))
        assert sum(1 for version in history if version.valid_to is None) == 1
        assert len(history[-1].observations) == 40


class TestDeleteEntities:
    """Tests for entity deletion."""

    def test_delete_hides_entity_and_keeps_history(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        later = clock.advance(50)

        assert store.delete_entities(['Alice']) == 1

        assert store.read_graph().entities == []
        [version] = store.get_entity_history('Alice')
        assert version.valid_to == later

    def test_delete_is_idempotent(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        assert store.delete_entities(['Alice', 'Ghost']) == 1
        assert store.delete_entities(['Alice']) == 0

    def test_history_of_unknown_entity(self, store):
        with pytest.raises(NotFoundError):
            store.get_entity_history('Ghost')


class TestLabels:
    """Tests for unversioned structural labels."""

    def test_add_label_does_not_version(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        assert store.add_label_to_entity('Alice', 'team lead')
        assert not store.add_label_to_entity('Alice', 'team lead')

        [entity] = store.open_nodes(['Alice']).entities
        assert entity.version == 1
        assert entity.labels == ['Person', 'team_lead']

    def test_add_label_to_missing_entity(self, store):
        with pytest.raises(NotFoundError):
            store.add_label_to_entity('Ghost', 'x')


class TestRelations:
    """Tests for relation versioning."""

    @pytest.fixture
    def people(self, store):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}, {'name': 'Bob', 'entityType': 'Person'}])

    def test_create_relation(self, store, people):
        [relation] = store.create_relations([{
            'from': 'Alice',
            'to': 'Bob',
            'relationType': 'knows well',
            'strength': 0.8,
            'confidence': 0.9
        }])

        assert relation.version == 1
        assert relation.relationship_type == 'knows_well'
        assert relation.metadata['createdAt'] == relation.metadata['updatedAt'] == T0
        assert relation.strength == 0.8

    def test_missing_endpoint_is_rejected(self, store, people):
        with pytest.raises(DanglingEndpointError, match='Carol'):
            store.create_relations([{'from': 'Alice', 'to': 'Carol', 'relationType': 'knows'}])

        assert store.read_graph().relations == []

    def test_out_of_range_strength(self, store, people):
        with pytest.raises(ValidationError):
            store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'strength': 1.5}])

    def test_inferred_from_must_be_list_of_ids(self, store, people):
        with pytest.raises(ValidationError):
            store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'metadata': {'inferredFrom': 'x'}}])

    def test_duplicate_relation_without_update(self, store, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])

        with pytest.raises(DuplicateKeyError):
            store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])

    def test_create_with_update_supersedes(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'strength': 0.5}])
        later = clock.advance(100)

        [relation] = store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'confidence': 0.7}],
                                            update=True)

        assert relation.version == 2
        assert relation.strength == 0.5
        assert relation.confidence == 0.7
        assert relation.metadata['createdAt'] == T0
        assert relation.metadata['updatedAt'] == later
        assert len(store.read_graph().relations) == 1

    def test_update_relation_merges_metadata(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'metadata': {'source': 'chat'}}])
        clock.advance()

        updated = store.update_relation({'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'metadata': {'note': 'x'}})

        assert updated.version == 2
        assert updated.metadata['source'] == 'chat'
        assert updated.metadata['note'] == 'x'

    def test_rewritten_value_resets_last_accessed(self, store, clock, people):
        store.create_relations([{
            'from': 'Alice',
            'to': 'Bob',
            'relationType': 'knows',
            'strength': 0.9,
            'metadata': {
                'lastAccessed': T0
            }
        }])
        later = clock.advance(1000)

        rewritten = store.update_relation({'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'strength': 0.8})
        clock.advance(1000)
        touched = store.update_relation({'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'metadata': {'note': 'x'}})

        assert rewritten.metadata['lastAccessed'] == later
        assert touched.metadata['lastAccessed'] == later

    def test_explicit_last_accessed_is_kept(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'strength': 0.5}])
        clock.advance(1000)

        updated = store.update_relation({
            'from': 'Alice',
            'to': 'Bob',
            'relationType': 'knows',
            'strength': 0.6,
            'metadata': {
                'lastAccessed': T0 + 10
            }
        })

        assert updated.metadata['lastAccessed'] == T0 + 10

    def test_update_missing_relation(self, store, people):
        with pytest.raises(NotFoundError):
            store.update_relation({'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'})

    def test_delete_relations(self, store, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])

        assert store.delete_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}]) == 1
        assert store.delete_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}]) == 0
        assert store.read_graph().relations == []

    def test_recreated_relation_continues_versions(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])
        clock.advance()
        store.delete_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])
        clock.advance()

        [relation] = store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])

        assert relation.version == 2
        assert relation.created_at == T0

    def test_relations_to_deleted_entity_are_filtered_at_read(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])
        clock.advance()
        store.delete_entities(['Bob'])

        assert store.read_graph().relations == []
        assert store.relations_for(['Alice']) == []

    def test_relation_survives_endpoint_update(self, store, clock, people):
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'}])
        clock.advance()
        store.update_entity('Bob', {'observations': ['moved to Paris']})

        assert [relation.key for relation in store.read_graph().relations] == [('Alice', 'Bob', 'knows')]


class TestReads:
    """Tests for snapshots, point-in-time reads and open_nodes."""

    def test_graph_at_time_returns_snapshot_valid_then(self, store, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['v1']}])
        before_update = clock.advance(100)
        update_time = clock.advance(100)
        store.update_entity('Alice', {'observations': ['v2']})
        clock.advance(100)
        store.delete_entities(['Alice'])

        assert store.get_graph_at_time(T0 - 1).entities == []
        assert store.get_graph_at_time(before_update).entities[0].observations == ['v1']
        assert store.get_graph_at_time(update_time).entities[0].observations == ['v2']
        assert store.read_graph().entities == []

    def test_graph_at_time_rejects_non_numbers(self, store):
        with pytest.raises(ValidationError):
            store.get_graph_at_time('yesterday')

    def test_open_nodes_keeps_request_order_and_skips_missing(self, store):
        store.create_entities([{'name': n, 'entityType': 'Person'} for n in ('Alice', 'Bob', 'Carol')])
        store.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows'},
                                {'from': 'Alice', 'to': 'Carol', 'relationType': 'knows'}])

        graph = store.open_nodes(['Bob', 'Ghost', 'Alice'])

        assert [entity.name for entity in graph.entities] == ['Bob', 'Alice']
        assert [relation.key for relation in graph.relations] == [('Alice', 'Bob', 'knows')]

    def test_read_graph_detects_two_current_versions(self, store, backend):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        [current] = backend.get_entity_versions('Alice')
        backend._entities['Alice'] = (current, current)

        with pytest.raises(InconsistentStateError):
            store.read_graph()

    def test_history_detects_version_gaps(self, store, backend, clock):
        store.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        clock.advance()
        store.update_entity('Alice', {'observations': ['x']})
        first, second = backend.get_entity_versions('Alice')
        backend._entities['Alice'] = (first, second.__class__(**{**second.__dict__, 'version': 3}))

        with pytest.raises(InconsistentStateError):
            store.get_entity_history('Alice')
