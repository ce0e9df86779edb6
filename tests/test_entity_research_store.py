from __future__ import annotations

from conftest import make_result_set
from researchlens.models.schemas import ResearchStatus, ResultSet
from researchlens.services.entity_research_store import NAMESPACE, EntityResearchStore

QUERIES = ["blood glucose"]


def _store(backend, clock, ttl_seconds: float = 3600) -> EntityResearchStore:
    return EntityResearchStore(backend, ttl_seconds=ttl_seconds, clock=clock)


def test_unknown_entity_reads_as_absent(backend, clock):
    store = _store(backend, clock)

    assert store.get("missing") is None
    assert store.get_many(["missing"]) == []
    assert store.has_pending(["missing"]) is False


def test_pending_then_completed(backend, clock):
    store = _store(backend, clock)
    results = [make_result_set("PubMed", ["https://p.example.com/1"])]

    store.mark_pending("lab-1", QUERIES)
    assert store.get("lab-1").status is ResearchStatus.PENDING
    assert store.has_pending(["other", "lab-1"]) is True
    assert store.get_many(["lab-1"]) == []

    record = store.complete("lab-1", QUERIES, results)

    assert record.status is ResearchStatus.COMPLETED
    assert store.get_many(["lab-1"]) == results
    assert store.has_pending(["lab-1"]) is False


def test_completing_with_no_records_marks_failed(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)

    empty = ResultSet(source="PubMed", records=[], query=QUERIES, created_at=clock.now)
    record = store.complete("lab-1", QUERIES, [empty])

    assert record.status is ResearchStatus.FAILED
    assert store.get("lab-1").status is ResearchStatus.FAILED
    assert store.get_many(["lab-1"]) == []


def test_failed_entities_contribute_nothing(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.mark_failed("lab-1", QUERIES)
    store.mark_pending("lab-2", QUERIES)
    store.complete("lab-2", QUERIES, [make_result_set("PubMed", ["https://p.example.com/2"])])

    sources = store.get_many(["lab-1", "lab-2"])

    assert [rs.records[0].url for rs in sources] == ["https://p.example.com/2"]


def test_terminal_status_is_not_overwritten(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])

    record = store.mark_failed("lab-1", QUERIES)

    assert record.status is ResearchStatus.COMPLETED
    assert store.get("lab-1").status is ResearchStatus.COMPLETED


def test_mark_pending_starts_a_fresh_run(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])

    clock.advance(10)
    record = store.mark_pending("lab-1", ["cholesterol levels"])

    assert record.status is ResearchStatus.PENDING
    assert record.results == []
    assert record.queries == ["cholesterol levels"]
    assert record.timestamp == clock.now


def test_get_many_dedupes_by_source_first_wins(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])
    store.mark_pending("lab-2", QUERIES)
    store.complete(
        "lab-2",
        QUERIES,
        [
            make_result_set("PubMed", ["https://p.example.com/2"]),
            make_result_set("Reuters", ["https://reuters.com/1"]),
        ],
    )

    sources = store.get_many(["lab-1", "lab-2"])

    assert [rs.source for rs in sources] == ["PubMed", "Reuters"]
    assert sources[0].records[0].url == "https://p.example.com/1"


def test_records_expire_from_their_creation_time(backend, clock):
    store = _store(backend, clock, ttl_seconds=100)
    store.mark_pending("lab-1", QUERIES)
    clock.advance(60)
    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])

    clock.advance(40)
    assert store.get("lab-1") is not None

    clock.advance(1)
    assert store.get("lab-1") is None
    assert store.get_many(["lab-1"]) == []


def test_records_survive_a_new_instance(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])

    reloaded = _store(backend, clock)

    assert reloaded.get("lab-1").status is ResearchStatus.COMPLETED
    assert reloaded.get_many(["lab-1"])[0].source == "PubMed"


def test_clear_and_clear_all(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.mark_pending("lab-2", QUERIES)

    store.clear("lab-1")
    assert store.get("lab-1") is None
    assert store.get("lab-2") is not None

    store.clear_all()
    assert store.get("lab-2") is None
    assert backend.load(NAMESPACE) is None


def test_failed_then_rerun_reflects_only_newest_status(backend, clock):
    store = _store(backend, clock)
    store.mark_pending("lab-1", QUERIES)
    store.mark_failed("lab-1", QUERIES)

    store.mark_pending("lab-1", QUERIES)
    assert store.get("lab-1").status is ResearchStatus.PENDING

    store.complete("lab-1", QUERIES, [make_result_set("PubMed", ["https://p.example.com/1"])])
    assert store.get("lab-1").status is ResearchStatus.COMPLETED
    assert len(store.get_many(["lab-1"])) == 1
