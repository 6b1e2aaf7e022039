import argparse
import logging
import os
import sys

# Allow running from a checkout without installing the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from stemsplit.separation.engines import EngineExecError, EngineInitError
from stemsplit.separation.models import SEPARATION_MODELS
from stemsplit.separation.observers import LoggingObserver
from stemsplit.separation.pipeline import StemSeparationPipeline

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Separate an audio file into stems")
    parser.add_argument("--audio_path", required=True, help="Path to input audio file")
    parser.add_argument("--model", default=None, choices=sorted(SEPARATION_MODELS), help="Separation model")
    parser.add_argument("--output_dir", default="outputs", help="Folder that receives the project folder")
    parser.add_argument(
        "--output_format",
        default=None,
        choices=["wav", "flac", "ogg", "mp3", "aac", "m4a"],
        help="Container of the written stems",
    )
    parser.add_argument("--window_seconds", type=float, default=None, help="Inference window length in seconds")
    parser.add_argument(
        "--backend",
        default=None,
        choices=["auto", "onnx_py", "demucs_py", "filterbank"],
        help="Inference backend",
    )
    parser.add_argument("--model_path", default=None, help="Exported model for the onnx backend")
    parser.add_argument("--preset", default=None, help="Config preset name (stemsplit/config/presets)")
    parser.add_argument("--run_log_dir", default=None, help="Write JSONL run logs under this folder")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def build_overrides(args):
    overrides = []
    if args.output_format:
        overrides.append(("io.output_format", args.output_format))
    if args.window_seconds is not None:
        overrides.append(("windowing.window_seconds", args.window_seconds))
    if args.model_path:
        overrides.append(("engine.model_path", args.model_path))
    if args.run_log_dir:
        overrides.append(("logging.run_log_dir", args.run_log_dir))
    return overrides


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        pipeline = StemSeparationPipeline(
            preset=args.preset,
            overrides=build_overrides(args),
            model=args.model,
            backend=args.backend,
        )
    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    observer = LoggingObserver(label=os.path.basename(args.audio_path))
    try:
        artifacts = pipeline.run(args.audio_path, args.output_dir, observer=observer)
    except (EngineInitError, EngineExecError, FileNotFoundError, RuntimeError) as e:
        logger.error("Separation failed: %s", e)
        return 1

    for stem, path in artifacts.stem_paths.items():
        logger.info("%-14s %s", stem, path)
    if not artifacts.complete:
        logger.error("Stems are incomplete: %s", artifacts.error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
