import argparse
import asyncio
import logging
from pathlib import Path

import httpx
from dotenv import load_dotenv

load_dotenv()

from coding_exam.cache import CODE_CACHE_PATH, KnowledgeCache
from coding_exam.evaluate import load_answer_key, save_performance_log
from coding_exam.ingestion import load_explanations, load_questions, save_questions
from coding_exam.llm import get_answer_model, get_perplexity_model
from coding_exam.pipeline import run_pipeline
from coding_exam.resolvers import HTTP_TIMEOUT_SECONDS, build_default_resolvers
from coding_exam.verify import build_default_chain


async def main():
    parser = argparse.ArgumentParser(description="Medical Coding Exam Agent CLI")
    parser.add_argument("--questions", type=str, default="data/questions.json", help="Questions JSON or exam text file")
    parser.add_argument("--answer-key", type=str, default=None, help="Answer key JSON or one-row CSV")
    parser.add_argument("--cache", type=str, default=CODE_CACHE_PATH, help="Code description cache JSON")
    parser.add_argument("--codes-dir", type=str, default=None, help="Local codebook directory")
    parser.add_argument("--limit", type=int, default=None, help="Limit number of questions to process")
    parser.add_argument("--output", type=str, default="exam_results.json", help="Output JSON file")
    parser.add_argument("--use-explanations", action="store_true", help="Include cached explanations in prompts")
    parser.add_argument("--merge-explanations", type=str, default=None, help="Explanations JSON to merge into the cache")
    parser.add_argument("--challenge-rate", type=float, default=0.0, help="Fraction of medium-confidence answers to challenge")
    parser.add_argument("--enrich", action="store_true", help="Improve explanations for incorrect answers")
    parser.add_argument("--performance-log", type=str, default="data/performance_log.json", help="Performance log output")
    parser.add_argument("--history", type=str, default="data/performance_history.json", help="Performance history file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Keep per-request noise out of the run log
    logging.getLogger("httpx").setLevel(logging.WARNING)

    print(f"Loading questions from {args.questions}...")
    questions = load_questions(args.questions)
    print(f"Found {len(questions)} questions.")

    if args.limit:
        questions = questions[:args.limit]
        print(f"Limited to {len(questions)} questions.")

    answer_key = None
    if args.answer_key:
        answer_key = load_answer_key(args.answer_key)
        print(f"Found {len(answer_key)} answers in key.")

    answer_model = get_answer_model()
    chain = build_default_chain()
    print(f"Answer model: {answer_model.name}")
    print(f"Verification chain: {', '.join(s.name for s in chain.strategies) or '(empty)'}")

    challenge_model = None
    if args.challenge_rate > 0:
        try:
            challenge_model = get_perplexity_model("research")
        except ValueError as exc:
            print(f"Challenge disabled: {exc}")

    def on_progress(msg):
        print(f"\r{msg}".ljust(80), end="", flush=True)

    codes_dir = Path(args.codes_dir) if args.codes_dir else None
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS, follow_redirects=True) as client:
        cache = KnowledgeCache.load(
            args.cache,
            resolvers=build_default_resolvers(codes_dir=codes_dir, client=client),
            use_explanations=args.use_explanations,
        )
        print(f"Code cache: {len(cache)} entries ({args.cache})")

        if args.merge_explanations:
            counts = await cache.merge_explanations(load_explanations(args.merge_explanations))
            print(
                f"Merged explanations: {counts['explanations_added']} updated, "
                f"{counts['new_codes_added']} new codes"
            )

        run = await run_pipeline(
            questions,
            cache,
            answer_model,
            chain,
            answer_key=answer_key,
            challenge_model=challenge_model,
            challenge_sample_rate=args.challenge_rate,
            enrich_model=answer_model if args.enrich else None,
            on_progress=on_progress,
        )
    print("\n")

    save_questions(run.questions, args.output)
    print(f"Results saved to {args.output}")

    stats = run.stats
    print("\n=== Verification ===")
    print(f"Verified:   {stats.get('verified', 0)}")
    print(f"Unverified: {stats.get('unverified', 0)}")
    print(f"Skipped:    {stats.get('skipped', 0)}")
    print(f"Changed:    {stats.get('changed', 0)}")

    if run.report is None:
        return

    summary = run.report.summary
    print("\n=== Summary ===")
    print(f"Correct:   {summary.correct_answers}/{summary.total_questions} ({summary.percentage}%)")
    print(f"Incorrect: {summary.incorrect_answers}/{summary.total_questions}")
    print("\nBy question type:")
    for family, group in summary.by_question_type.items():
        print(f"  {family:8} {group.correct}/{group.total} ({group.percentage}%)")
    print("\nBy model:")
    for model, group in summary.by_model.items():
        print(f"  {model:24} {group.correct}/{group.total} ({group.percentage}%)")
    for result in run.report.results:
        if not result.is_correct:
            print(f"Q{result.number}: ✗ {result.my_answer or 'MISSING'} (expected {result.correct_answer})")
    if "enriched" in stats:
        print(f"\nEnriched explanations: {stats['enriched']}")

    save_performance_log(run.report.log, args.performance_log, args.history)
    print(f"\nPerformance log saved to {args.performance_log}")


if __name__ == "__main__":
    asyncio.run(main())
