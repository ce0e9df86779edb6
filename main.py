"""ResearchLens - cached research aggregation

Simple CLI for running research queries.
"""

import argparse
import asyncio
import sys

from researchlens.config import settings
from researchlens.models.schemas import ResultSet
from researchlens.research_core.scoring.service import rank
from researchlens.services.research_service import ResearchService, build_service


def _print_progress(source: str, result_set: ResultSet) -> None:
    print(f"  [+] {source}: {len(result_set.records)} records")


async def run_query(service: ResearchService, terms: list[str]) -> int:
    """Search the given terms and print ranked records."""
    print(f"Research query: {' '.join(terms)}")
    print("-" * 50)

    result = await service.search(terms, on_progress=_print_progress)

    if result.from_cache:
        print("[*] Served from cache")
    for failure in result.failures:
        print(f"  [!] {failure.source} failed after {failure.attempts} attempt(s): {failure.reason}")
    if result.fallback:
        print("\n[!] No sources returned results; try searching directly:")

    for i, record in enumerate(rank(result.records()), 1):
        print(f"\n{i}. {record.title}")
        print(f"   {record.url}")
        print(
            f"   score={record.combined_score:.2f} "
            f"(relevance={record.relevance_score:.2f}, "
            f"freshness={record.freshness_score:.2f}, "
            f"credibility={record.credibility_score:.2f})"
        )
        if record.author:
            print(f"   by {record.author}")
    return 0 if result.result_sets else 1


async def run_prefetch(service: ResearchService, topics: list[str]) -> int:
    print(f"[~] Pre-fetching {len(topics)} topics...")
    warmed = await service.prefetch(topics)
    print(f"[*] Cached {len(warmed)} result sets")
    return 0


def main():
    parser = argparse.ArgumentParser(description="ResearchLens research aggregation tool")
    parser.add_argument("--query", "-q", nargs="+", help="Search terms (order does not matter)")
    parser.add_argument(
        "--prefetch",
        action="store_true",
        help="Warm the term cache with PREFETCH_TOPICS",
    )
    parser.add_argument("--evict", action="store_true", help="Drop expired term cache entries")
    parser.add_argument(
        "--storage",
        choices=["memory", "file"],
        help="Persistence backend (default: from config)",
    )

    args = parser.parse_args()
    if not (args.query or args.prefetch or args.evict):
        parser.error("one of --query, --prefetch or --evict is required")

    config = settings.model_copy(update={"storage_backend": args.storage}) if args.storage else settings
    service = build_service(config)

    exit_code = 0
    if args.evict:
        removed = service.evict_expired()
        print(f"[*] Evicted {removed} expired entries")
    if args.prefetch:
        exit_code = asyncio.run(run_prefetch(service, settings.prefetch_topic_list))
    if args.query:
        exit_code = asyncio.run(run_query(service, args.query))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
