# scripts/run_matching.py

import argparse
import asyncio
import logging
import os
import sys
from dotenv import load_dotenv

# Adjust the path to import from the podmatch package
# This assumes the script is run from the project root directory
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from podmatch.api.exceptions import MatchingEngineError
from podmatch.config import get_settings
from podmatch.engine import MatchingEngine
from podmatch.models.matching import MatchFilter

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Find podcasts that fit an author as a guest.")
    parser.add_argument("author_id", help="ID of the author to match")
    parser.add_argument("--max-results", type=int, default=None, help="Maximum matches to return")
    parser.add_argument("--min-score", type=float, default=None, help="Minimum overall score (0-1)")
    parser.add_argument("--max-concurrent", type=int, default=None, help="Candidates scored in parallel")
    parser.add_argument("--create-tables", action="store_true", help="Create database tables before running")
    return parser.parse_args(argv)


async def run(args) -> int:
    settings = get_settings()
    if args.max_concurrent:
        settings.BATCH_MAX_CONCURRENT = args.max_concurrent
    engine = MatchingEngine.from_settings(settings, create_schema=args.create_tables)

    match_filter = MatchFilter(min_score=args.min_score, max_results=args.max_results)
    try:
        result = await engine.find_matches(args.author_id, match_filter)
    except MatchingEngineError as e:
        logger.error(f"Matching failed for author {args.author_id}: {e}")
        fallback = await engine.get_fallback_recommendations(args.author_id)
        print(f"Matching failed ({e.code}). Fallback recommendations:")
        for podcast in fallback:
            print(f"  - {podcast.title} ({podcast.id}) rating={podcast.rating}")
        return 1

    print(f"{len(result.matches)} matches from {result.total_candidates} candidates "
          f"({result.processing_time_ms:.0f}ms):")
    for match in result.matches:
        print(f"{match.rank:>3}. {match.podcast_id}  score={match.overall_score:.2f}  confidence={match.confidence:.2f}")
        for line in match.breakdown.explanation:
            print(f"       - {line}")
        if match.suggested_topics:
            print(f"       suggested topics: {', '.join(match.suggested_topics)}")
    return 0


def main():
    """Main function to run a batch match from the command line."""
    logger.info("--- Starting Matching Script ---")

    # Load environment variables from .env file
    load_dotenv()

    args = parse_args()
    exit_code = asyncio.run(run(args))
    logger.info("--- Matching Script Finished ---")
    sys.exit(exit_code)

if __name__ == "__main__":
    main()
