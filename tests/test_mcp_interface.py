"""
Tests for the MCP tool functions.
"""

import pytest
from fastmcp.exceptions import ToolError

from kgmemory import mcp_interface


@pytest.fixture
def tools(service, monkeypatch):
    monkeypatch.setattr(mcp_interface, '_service', service)
    return mcp_interface


class TestTools:
    """Tests for the tool functions backed by an in-memory service."""

    def test_create_and_read(self, tools):
        created = tools.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['likes tea']}])

        assert created[0]['name'] == 'Alice'
        assert 'embedding' not in created[0]
        graph = tools.read_graph()
        assert [entity['name'] for entity in graph['entities']] == ['Alice']
        assert graph['relations'] == []

    def test_relations_and_open_nodes(self, tools):
        tools.create_entities([{'name': 'Alice', 'entityType': 'Person'}, {'name': 'Bob', 'entityType': 'Person'}])
        tools.create_relations([{'from': 'Alice', 'to': 'Bob', 'relationType': 'knows', 'strength': 0.7}])

        graph = tools.open_nodes(['Alice', 'Bob', 'Ghost'])

        assert [entity['name'] for entity in graph['entities']] == ['Alice', 'Bob']
        assert graph['relations'][0]['from'] == 'Alice'
        assert graph['relations'][0]['strength'] == 0.7

    def test_update_history_and_delete(self, tools, clock):
        tools.create_entities([{'name': 'Alice', 'entityType': 'Person'}])
        clock.advance()
        tools.update_entity('Alice', {'metadata': {'team': 'core'}})

        history = tools.get_entity_history('Alice')
        assert [version['version'] for version in history] == [1, 2]
        assert history[1]['metadata'] == {'team': 'core'}
        assert tools.delete_entities(['Alice']) == {'deleted': 1}

    def test_search_and_ontology(self, tools):
        tools.create_entities([{'name': 'Alice', 'entityType': 'Person', 'observations': ['brews espresso']}])

        results = tools.search_similar('espresso', limit=5)

        assert results[0]['entity']['name'] == 'Alice'
        assert tools.get_ontology() == 'EntityType: Person (1)\n\nNo relation types found in the knowledge graph.'

    def test_label_and_backfill(self, tools):
        tools.create_entities([{'name': 'Alice', 'entityType': 'Person'}])

        assert tools.add_label_to_entity('Alice', 'vip') == {'added': True}
        assert tools.backfill_embeddings() == {'updated': [], 'failed': {}}

    def test_domain_errors_become_tool_errors(self, tools):
        with pytest.raises(ToolError, match='Ghost'):
            tools.update_entity('Ghost', {'observations': ['x']})

    def test_validation_errors_become_tool_errors(self, tools):
        with pytest.raises(ToolError, match='search_similar failed'):
            tools.search_similar('   ')

    def test_every_operation_is_exposed(self):
        names = {tool.__name__ for tool in mcp_interface.TOOLS}

        assert names == {
            'create_entities', 'update_entity', 'add_observations', 'delete_entities', 'create_relations', 'update_relation',
            'delete_relations', 'add_label_to_entity', 'read_graph', 'open_nodes', 'get_entity_history',
            'get_graph_at_time', 'get_decayed_graph', 'search_similar', 'get_ontology', 'backfill_embeddings'
        }
