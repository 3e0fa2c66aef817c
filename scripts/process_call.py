"""Process local call recordings through the redaction pipeline.

Each file is copied into local storage, then run exactly as the API would run it.

Usage:
    python scripts/process_call.py recording.mp3 [more.mp3 ...] --salesperson rep-42
    python scripts/process_call.py --data-dir data/calls --salesperson rep-42
"""

import sys
import json
import time
import shutil
import argparse
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv()

from loguru import logger

from config.errors import PipelineError
from config.schemas import Caller, ProcessRequest
from config.settings import PipelineSettings
from analysis.pii_detection import RegexPiiDetector
from analysis.conversation_analysis import LLMConversationAnalyzer
from pipeline.orchestrator import CallPipeline
from services.asr.transcription_client import AssemblyAITranscriptionService
from services.storage.local import STORAGE_ROOT, LocalObjectStorage
from services.storage.repository import REPOSITORY_ROOT, JsonFileRepository

AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".ogg", ".flac", ".aac")


def find_audio_files(data_dir: str) -> list[Path]:
    return sorted(p for p in Path(data_dir).rglob("*") if p.suffix.lower() in AUDIO_EXTENSIONS)


def main():
    parser = argparse.ArgumentParser(description="Redact and analyze local call recordings")
    parser.add_argument("files", nargs="*", help="Audio files to process")
    parser.add_argument("--data-dir", default=None, help="Process every audio file under this directory")
    parser.add_argument("--salesperson", required=True, help="Salesperson id for the transcript records")
    parser.add_argument("--storage-root", default=STORAGE_ROOT, help="Local object storage directory")
    parser.add_argument("--repository-root", default=REPOSITORY_ROOT, help="Where transcript JSON is written")
    parser.add_argument("--trim", action="store_true", help="Enable speech trimming regardless of size")
    args = parser.parse_args()

    files = [Path(f) for f in args.files]
    if args.data_dir:
        files.extend(find_audio_files(args.data_dir))
    if not files:
        parser.error("no audio files given")

    overrides = {}
    if args.trim:
        base = PipelineSettings.from_env().speech_trim
        overrides["speech_trim"] = base.model_copy(update={"enabled": True, "min_size_bytes": 0})
    settings = PipelineSettings.from_env(**overrides)

    storage = LocalObjectStorage(args.storage_root)
    pipeline = CallPipeline(
        storage=storage,
        repository=JsonFileRepository(args.repository_root),
        transcription=AssemblyAITranscriptionService(settings),
        pii_detector=RegexPiiDetector(),
        analyzer=LLMConversationAnalyzer(settings.llm),
        settings=settings,
    )
    caller = Caller(id="cli", is_admin=True)

    results = []
    total_start = time.time()
    for i, path in enumerate(files):
        logger.info(f"Processing {i + 1}/{len(files)}: {path.name}")
        storage_path = f"uploads/{args.salesperson}/{path.name}"
        dest = Path(args.storage_root) / storage_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, dest)

        start = time.time()
        try:
            result = pipeline.process(
                ProcessRequest(
                    storage_path=storage_path,
                    original_filename=path.name,
                    salesperson_id=args.salesperson,
                ),
                caller,
            )
            results.append({
                "file": path.name,
                "status": "success",
                "transcript_id": result.transcript_id,
                "pii_ranges": result.pii_range_count,
                "conversations_found": result.conversations_found,
                "conversations_saved": len(result.conversations_saved),
                "processing_time_s": round(time.time() - start, 1),
            })
        except PipelineError as e:
            logger.error(f"FAILED {path.name}: {e.message}")
            results.append({
                "file": path.name,
                "status": "failed",
                "error": e.message,
                "processing_time_s": round(time.time() - start, 1),
            })

    total_elapsed = time.time() - total_start
    print(json.dumps(results, indent=2))
    succeeded = sum(1 for r in results if r["status"] == "success")
    print(f"\nSuccess: {succeeded}/{len(results)} in {total_elapsed:.0f}s")
    if succeeded < len(results):
        sys.exit(1)


if __name__ == "__main__":
    main()
