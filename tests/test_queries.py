"""Tests for AdvisoryQueries over a store populated through the real pipeline."""

import pytest

from advisory_db.config.settings import Settings
from advisory_db.orchestration.cvelist_orchestrator import CveListOrchestrator
from advisory_db.queries import AdvisoryQueries

from tests.fakes import FakeCorpusSource, InMemoryDocumentStore, cvss, legacy_record, v5_record


async def populated_store():
    store = InMemoryDocumentStore()
    source = FakeCorpusSource({
        '2024/a.json': v5_record('CVE-2024-0001', affects={'Acme': {'Widget': [('1.0', 'affected')]}},
                                 cna_metrics=[cvss('3.1', 9.8, 'CRITICAL')]),
        '2024/b.json': v5_record('CVE-2024-0002', affects={'Acme': {'Widget': [('1.1', 'affected')],
                                                                    'Gadget': [('2.0', 'affected')]}},
                                 cna_metrics=[cvss('3.1', 7.5, 'HIGH')]),
        '2024/c.json': legacy_record('CVE-2024-0003', affects={'Globex': {'Widget': [('9.0', '=')]}},
                                     cvss={'version': '3.0', 'baseScore': 5.3, 'baseSeverity': 'Medium'}),
        '2024/d.json': v5_record('CVE-2024-0004', state='REJECTED'),
    })
    config = Settings(CORPUS_SUBTREE='2024', RETRY_BACKOFF_SECONDS=0, DB_INITIALIZE_SCHEMA=False)
    async with CveListOrchestrator(config, store=store, source=source) as orchestrator:
        await orchestrator.run('full')
    return store


class TestLookups:

    @pytest.mark.asyncio
    async def test_advisories_by_organization(self):
        queries = AdvisoryQueries(await populated_store())
        advisories = await queries.advisories_by_organization('Acme')
        assert sorted(a.advisory_id for a in advisories) == ['CVE-2024-0001', 'CVE-2024-0002']

    @pytest.mark.asyncio
    async def test_advisories_by_offering_across_organizations(self):
        queries = AdvisoryQueries(await populated_store())
        advisories = await queries.advisories_by_offering('Widget')
        assert sorted(a.advisory_id for a in advisories) == ['CVE-2024-0001', 'CVE-2024-0002', 'CVE-2024-0003']

    @pytest.mark.asyncio
    async def test_advisories_by_offering_scoped_to_organization(self):
        queries = AdvisoryQueries(await populated_store())
        advisories = await queries.advisories_by_offering('Widget', organization_name='Globex')
        assert [a.advisory_id for a in advisories] == ['CVE-2024-0003']

    @pytest.mark.asyncio
    async def test_offerings_by_organization(self):
        queries = AdvisoryQueries(await populated_store())
        offerings = await queries.offerings_by_organization('Acme')
        assert [o.name for o in offerings] == ['Gadget', 'Widget']
        widget = offerings[1]
        assert widget.version_map == {'1.0': True, '1.1': True}
        assert widget.advisory_count == 2


class TestRankings:

    @pytest.mark.asyncio
    async def test_top_organizations(self):
        queries = AdvisoryQueries(await populated_store())
        top = await queries.top_organizations(limit=1)
        assert [(o.name, o.advisory_count) for o in top] == [('Acme', 2)]

    @pytest.mark.asyncio
    async def test_top_offerings(self):
        queries = AdvisoryQueries(await populated_store())
        top = await queries.top_offerings(limit=2)
        assert top[0].name == 'Widget'
        assert top[0].organization_name == 'Acme'
        assert top[0].advisory_count == 2


class TestStats:

    @pytest.mark.asyncio
    async def test_advisory_stats(self):
        stats = await AdvisoryQueries(await populated_store()).advisory_stats()
        assert stats['total'] == 4
        assert stats['by_lifecycle_state']['PUBLISHED'] == 2
        assert stats['by_lifecycle_state']['PUBLIC'] == 1
        assert stats['by_lifecycle_state']['REJECTED'] == 1
        assert stats['by_severity']['CRITICAL'] == 1
        assert stats['by_severity']['HIGH'] == 1
        assert stats['by_severity']['MEDIUM'] == 1
        assert stats['by_severity']['UNRATED'] == 1
        assert stats['organizations'] == 2
        assert stats['offerings'] == 3
