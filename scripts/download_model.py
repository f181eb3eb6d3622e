"""
Download, inspect, repair or delete the local model.

USAGE:
    # Download everything that is missing (resumes partial files)
    python scripts/download_model.py

    # Show what is on disk
    python scripts/download_model.py --status

    # Re-fetch only missing / undersized files
    python scripts/download_model.py --repair

    # Start over
    python scripts/download_model.py --delete
    python scripts/download_model.py --redownload

    # A different repository or location
    python scripts/download_model.py --repo-id openai-community/gpt2 \
        --shard-count 1 --models-dir ./models

Ctrl+C cancels cooperatively: the current .tmp file is kept and the next run
resumes it with a range request.

WHAT THIS SCRIPT DOES:
    1. Builds an AcquisitionConfig from the CLI arguments
    2. Creates a ModelAcquisitionManager (which checks the files on disk)
    3. Runs the requested command on a background thread, drawing a tqdm
       progress bar from the manager's progress listener
"""

import os
import sys
import argparse
import threading

from tqdm import tqdm

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aura_llm.acquisition import ModelAcquisitionManager, ModelState
from aura_llm.config import AcquisitionConfig, default_models_dir
from aura_llm.utils import ProgressLogger, format_bytes


def print_status(manager: ModelAcquisitionManager) -> None:
    status = manager.model_status()
    print("=" * 60)
    print(f"Model:     {manager.config.repo_id}")
    print(f"Location:  {manager.model_dir}")
    print(f"State:     {manager.state.value}")
    print(f"Complete:  {status.is_complete}")
    print(f"On disk:   {format_bytes(manager.directory_size())}")
    if status.missing_files:
        print("Missing:")
        for name in status.missing_files:
            print(f"  - {name}")
    print("=" * 60)


def run_with_progress(manager: ModelAcquisitionManager, command) -> bool:
    """Run a download-type command on a worker thread with a tqdm bar."""
    bar = tqdm(total=0, unit="B", unit_scale=True, unit_divisor=1024, desc="Downloading")

    def on_change(state, progress):
        if progress.total_bytes and bar.total != progress.total_bytes:
            bar.total = progress.total_bytes
        bar.n = progress.downloaded_bytes
        bar.refresh()

    manager.add_listener(on_change)
    result = {}

    def worker():
        result["ok"] = command()

    thread = threading.Thread(target=worker, name="model-download", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(timeout=0.5)
    except KeyboardInterrupt:
        print("\nCancelling download...")
        manager.cancel_download()
        thread.join()
    finally:
        manager.remove_listener(on_change)
        bar.close()

    return result.get("ok", False)


def main():
    parser = argparse.ArgumentParser(
        description="Download and manage the local model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    source = parser.add_argument_group("Source")
    source.add_argument(
        "--repo-id", type=str, default=AcquisitionConfig.repo_id,
        help="Hugging Face repository id"
    )
    source.add_argument(
        "--shard-count", type=int, default=AcquisitionConfig.shard_count,
        help="Number of weight shards (model-<i>-of-<n>.safetensors)"
    )

    target = parser.add_argument_group("Target")
    target.add_argument(
        "--models-dir", type=str, default=default_models_dir(),
        help="Directory holding one subdirectory per model"
    )
    target.add_argument(
        "--model-name", type=str, default=None,
        help="Subdirectory name (default: last part of the repo id)"
    )
    target.add_argument(
        "--log-dir", type=str, default=None,
        help="Also append download logs to a file in this directory"
    )

    action = parser.add_mutually_exclusive_group()
    action.add_argument("--status", action="store_true", help="Only print the model status")
    action.add_argument("--repair", action="store_true", help="Fetch only missing/undersized files")
    action.add_argument("--delete", action="store_true", help="Delete the local model")
    action.add_argument("--redownload", action="store_true", help="Delete, then download again")

    args = parser.parse_args()

    config = AcquisitionConfig(
        repo_id=args.repo_id,
        models_dir=args.models_dir,
        model_name=args.model_name,
        shard_count=args.shard_count,
    )
    # Console output comes from the tqdm bar; the file log gets every record.
    logger = ProgressLogger(log_dir=args.log_dir, quiet=args.log_dir is not None)
    manager = ModelAcquisitionManager(config, logger=logger)

    try:
        if args.status:
            print_status(manager)
            return
        if args.delete:
            manager.delete()
            print_status(manager)
            return

        if args.repair:
            ok = run_with_progress(manager, manager.repair_incomplete)
        elif args.redownload:
            manager.delete()
            ok = run_with_progress(manager, manager.download)
        else:
            ok = run_with_progress(manager, manager.download)

        print_status(manager)
        if not ok:
            if manager.last_error:
                print(f"Error: {manager.last_error}")
            sys.exit(1)
        if manager.state == ModelState.READY:
            print("Model is ready.")
    finally:
        manager.close()
        logger.close()


if __name__ == "__main__":
    main()
