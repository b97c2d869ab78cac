import argparse
import json
import logging
import sys
import time
from pathlib import Path

from video_insights import (
	AnalysisOrchestrator,
	AnalysisResult,
	AnalysisStatus,
	EnvCredentialSource,
	JsonFileStore,
	ProgressRecord,
	ProgressStore,
	StaticTranscriptProvider,
	YtDlpTranscriptProvider,
	extract_video_id,
)
from video_insights.providers import available_providers


def parse_args() -> argparse.Namespace:
	parser = argparse.ArgumentParser(description="Analyze a video transcript with a streaming LLM provider.")
	parser.add_argument("video", help="YouTube URL or video id")
	parser.add_argument(
		"--provider",
		choices=available_providers(),
		help="AI provider to use (defaults to VIDEO_INSIGHTS_PROVIDER or anthropic)",
	)
	parser.add_argument(
		"--api-key",
		dest="api_key",
		help="Provider API key (defaults to VIDEO_INSIGHTS_API_KEY or the provider's own variable)",
	)
	parser.add_argument(
		"--transcript-file",
		dest="transcript_file",
		help="Analyze this text file instead of fetching captions",
	)
	parser.add_argument(
		"--title",
		help="Video title to use with --transcript-file",
	)
	parser.add_argument(
		"--languages",
		default="en",
		help="Comma separated caption languages to try, in order",
	)
	parser.add_argument(
		"--output-language",
		dest="output_language",
		help="Ask the model to answer in this language",
	)
	parser.add_argument(
		"--store-dir",
		dest="store_dir",
		help="Directory for progress and result records (defaults to VIDEO_INSIGHTS_STORE_DIR or the user cache)",
	)
	parser.add_argument(
		"--timeout",
		type=float,
		default=300.0,
		help="Overall deadline in seconds for the model response",
	)
	parser.add_argument(
		"--poll-interval",
		dest="poll_interval",
		type=float,
		default=0.5,
		help="Seconds between progress checks",
	)
	parser.add_argument(
		"--force",
		action="store_true",
		help="Discard any stored analysis for this video before starting",
	)
	parser.add_argument(
		"--status",
		action="store_true",
		help="Print the stored status for the video and exit",
	)
	parser.add_argument(
		"--summary-only",
		dest="summary_only",
		action="store_true",
		help="Print only the summary text instead of the full result payload",
	)
	parser.add_argument(
		"--debug",
		action="store_true",
		help="Enable debug logging",
	)
	return parser.parse_args()


def resolve_video_id(args: argparse.Namespace) -> str:
	video_id = extract_video_id(args.video)
	if video_id:
		return video_id
	if args.transcript_file:
		return Path(args.transcript_file).stem
	raise ValueError(f"Could not find a YouTube video id in: {args.video}")


def build_transcript_provider(args: argparse.Namespace):
	if args.transcript_file:
		path = Path(args.transcript_file)
		if not path.exists():
			raise FileNotFoundError(f"Transcript file does not exist: {path}")
		return StaticTranscriptProvider(path.read_text(encoding="utf-8"), title=args.title or path.stem)
	languages = [language.strip() for language in args.languages.split(",") if language.strip()]
	return YtDlpTranscriptProvider(languages=languages or ["en"])


def print_status(status, *, summary_only: bool) -> int:
	if status is None:
		print("No analysis stored for this video.")
		return 0
	if isinstance(status, AnalysisResult):
		if summary_only:
			print(status.summary)
		else:
			print(json.dumps(status.to_dict(), indent=2, ensure_ascii=False))
		return 0
	if isinstance(status, ProgressRecord) and status.error:
		print(f"Analysis failed: {status.error}", file=sys.stderr)
		return 1
	print(json.dumps(status.to_dict(), indent=2, ensure_ascii=False))
	return 0


def main() -> int:
	args = parse_args()
	logging.basicConfig(
		level=logging.DEBUG if args.debug else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)

	video_id = resolve_video_id(args)
	store = ProgressStore(JsonFileStore(args.store_dir))

	if args.status:
		with AnalysisOrchestrator(store=store) as orchestrator:
			return print_status(orchestrator.status(video_id), summary_only=args.summary_only)

	if not args.force:
		cached = store.read_result(video_id)
		if cached is not None:
			print(f"[{video_id}] Using stored analysis (pass --force to analyze again)", file=sys.stderr)
			return print_status(cached, summary_only=args.summary_only)

	orchestrator = AnalysisOrchestrator(
		store=store,
		transcript_provider=build_transcript_provider(args),
		credential_source=EnvCredentialSource(provider_id=args.provider, api_key=args.api_key),
		timeout=args.timeout,
		language=args.output_language,
	)
	with orchestrator:
		orchestrator.start(video_id, args.video, force=args.force)
		last_message = None
		while orchestrator.is_running(video_id):
			record = store.read(video_id)
			if record is not None and record.progress_message != last_message:
				last_message = record.progress_message
				print(f"[{video_id}] {last_message}", file=sys.stderr)
			time.sleep(args.poll_interval)
		record = store.read(video_id)
		if record is not None and record.status is AnalysisStatus.ERROR:
			return print_status(record, summary_only=args.summary_only)
		return print_status(orchestrator.status(video_id), summary_only=args.summary_only)


if __name__ == "__main__":
	sys.exit(main())
