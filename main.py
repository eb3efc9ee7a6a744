"""deepresearch - iterative web research agent

Simple CLI for running research queries.
"""

import argparse
import asyncio
import sys

from deepresearch.agent import ResearchAgent, ResearchAgentConfig
from deepresearch.errors import ResearchAgentError
from deepresearch.models.research import ProgressEvent, ResearchDepth, ResearchOptions
from deepresearch.services.cost import format_breakdown


def print_progress(event: ProgressEvent) -> None:
    print(f"[{event.progress:>3}%] {event.stage.value:<11} {event.message}")


async def run_research(query: str, depth: str, *, cost: bool, allow_partial: bool) -> int:
    """Run research on the given query. Returns a process exit code."""
    print(f"Research query: {query}")
    print("-" * 50)

    try:
        config = ResearchAgentConfig.from_settings(depth=depth)
        async with ResearchAgent(config) as agent:
            result = await agent.research(
                query,
                ResearchOptions(
                    depth=depth,
                    on_progress=print_progress,
                    enable_cost_tracking=cost,
                    allow_partial_results=allow_partial,
                ),
            )
    except ResearchAgentError as exc:
        print(f"\n[!] Error ({exc.code}): {exc.message}", file=sys.stderr)
        return 1

    meta = result.metadata
    print(f"\n[*] Research Complete{' (partial)' if meta.partial else ''}!")
    print(f"   Runtime: {meta.total_duration_ms}ms")
    print(f"   Rounds: {meta.rounds}")
    print(f"   Queries: {len(meta.queries_executed)}")
    print(f"   Sources: {meta.sources_scraped}")
    if meta.partial:
        print(f"   Error: {meta.error} ({meta.error_code})")
    print(f"\n{'=' * 50}")
    print("REPORT:")
    print(f"{'=' * 50}")
    print(result.report)

    if cost and meta.costs is not None:
        print()
        print(format_breakdown(meta.costs))
    return 0


def main():
    parser = argparse.ArgumentParser(description="deepresearch - iterative web research agent")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument(
        "--depth",
        "-d",
        choices=[d.value for d in ResearchDepth],
        default=ResearchDepth.NORMAL.value,
        help="Research depth (default: normal)",
    )
    parser.add_argument("--cost", action="store_true", help="Print an estimated cost breakdown")
    parser.add_argument(
        "--no-partial", action="store_true", help="Fail instead of returning partial results"
    )

    args = parser.parse_args()

    sys.exit(
        asyncio.run(
            run_research(args.query, args.depth, cost=args.cost, allow_partial=not args.no_partial)
        )
    )


if __name__ == "__main__":
    main()
