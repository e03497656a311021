#!/usr/bin/env python3
"""
Command-line entry point: train a model from pair records, compare two
images, or inspect a saved model document.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from tqdm import tqdm

from .config import load_config
from .errors import BadRequestError
from .events import StatusEvent, StatusKind
from .identifier import AnimalIdentifier
from .image_sources import fetch_image, load_image
from .pair_store import PairRecord
from .persistence import read_model_document
from .storage import JsonFileKeyValueStore


logger = logging.getLogger(__name__)


def _read_pair_records(path: Path) -> List[PairRecord]:
    with open(path, 'r') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise BadRequestError(f"{path} must contain a JSON array of pair records")
    return [PairRecord.from_dict(item) for item in data]


def _build_identifier(args) -> AnimalIdentifier:
    overrides = {}
    if args.device:
        overrides['device'] = args.device
    if getattr(args, 'epochs', None):
        overrides['epochs'] = args.epochs

    config = load_config(args.config, **overrides)
    store = JsonFileKeyValueStore(Path(args.storage)) if args.storage else None
    return AnimalIdentifier(config=config, store=store)


async def run_train(args) -> int:
    identifier = _build_identifier(args)
    try:
        return await _train(identifier, args)
    finally:
        identifier.close()


async def _train(identifier: AnimalIdentifier, args) -> int:
    try:
        records = _read_pair_records(Path(args.pairs))
    except (OSError, ValueError) as e:
        print(f"Error: Could not read pair records: {e}")
        return 1

    result = identifier.initialize()
    if not result.success:
        print(f"Error: {result.message}")
        return 1

    for record in tqdm(records, desc="Loading pairs", unit="pair"):
        try:
            image1 = await fetch_image(record.image1_url)
            image2 = await fetch_image(record.image2_url)
        except (OSError, ValueError) as e:
            print(f"Error: Could not load images for pair {record.to_dict()}: {e}")
            return 1

        result = identifier.add_training_pair([image1, image2], record.is_same_animal,
                                              urls=[record.image1_url, record.image2_url])
        if not result.success:
            print(f"Error: {result.message}")
            return 1

    progress_bar = tqdm(total=identifier.config.epochs, desc="Training", unit="epoch")

    def on_status(event: StatusEvent):
        if event.kind == StatusKind.TRAINING and 'epoch' in event.details:
            progress_bar.update(1)
            progress_bar.set_postfix({
                'loss': f"{event.details['loss']:.4f}",
                'acc': f"{event.details['accuracy']:.4f}",
            })

    unsubscribe = identifier.subscribe(on_status)
    try:
        result = await identifier.start_training()
    finally:
        unsubscribe()
        progress_bar.close()

    if not result.success:
        print(f"Error: {result.message}")
        return 1

    summary = result.value
    print("Siamese network training completed successfully!")
    print(f"Final loss: {summary.final_loss:.4f}")
    print(f"Final accuracy: {summary.final_accuracy:.4f}")
    print(f"Training time: {summary.training_time:.2f} seconds")

    saved = identifier.save_model(args.output, name=args.name)
    if not saved.success:
        print(f"Error: {saved.message}")
        return 1

    print(f"Model saved to: {saved.value}")
    return 0


async def run_compare(args) -> int:
    identifier = _build_identifier(args)

    result = await identifier.load_model_file(args.model, restore_pairs=False)
    if not result.success:
        print(f"Error: {result.message}")
        return 1

    try:
        images = [load_image(args.image_a), load_image(args.image_b)]
    except (OSError, ValueError) as e:
        print(f"Error: Could not load images: {e}")
        return 1

    overrides = {}
    if args.threshold is not None:
        overrides['prediction_threshold'] = args.threshold

    result = identifier.compare(images, **overrides)
    if not result.success:
        print(f"Error: {result.message}")
        return 1

    comparison = result.value
    verdict = "SAME animal" if comparison.same_animal else "DIFFERENT animals"
    print(f"{verdict}")
    print(f"Similarity score: {comparison.similarity_score:.4f} (threshold {comparison.threshold})")
    print(f"Confidence: {comparison.confidence:.2%}")
    return 0


def run_inspect(args) -> int:
    try:
        document = read_model_document(args.model)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    print(json.dumps(document.get('metadata', {}), indent=2))
    for key in ('featureExtractor', 'siameseModel'):
        artifacts = document.get(key) or {}
        specs = artifacts.get('weightSpecs', [])
        print(f"{key}: {len(specs)} weight tensors, {len(artifacts.get('weightData', []))} bytes")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Siamese pet identification")
    parser.add_argument("--config", default=os.getenv("PET_ID_CONFIG"), help="Path to configuration file")
    parser.add_argument("--device", default=os.getenv("PET_ID_DEVICE"), choices=["auto", "cpu", "cuda"])
    parser.add_argument("--storage", help="JSON file used as the key/value slot for pair records")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    train_parser = subparsers.add_parser("train", help="Train on a JSON array of pair records")
    train_parser.add_argument("--pairs", required=True, help="JSON file of {image1Url, image2Url, isSameAnimal}")
    train_parser.add_argument("--output", required=True, help="Where to write the model document")
    train_parser.add_argument("--name", help="Model name stored in the metadata")
    train_parser.add_argument("--epochs", type=int, help="Override the configured epoch count")

    compare_parser = subparsers.add_parser("compare", help="Compare two images with a saved model")
    compare_parser.add_argument("image_a", help="First image path or URL")
    compare_parser.add_argument("image_b", help="Second image path or URL")
    compare_parser.add_argument("--model", required=True, help="Model document to load")
    compare_parser.add_argument("--threshold", type=float, help="Override the decision threshold")

    inspect_parser = subparsers.add_parser("inspect", help="Print the metadata of a model document")
    inspect_parser.add_argument("model", help="Model document to inspect")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the pet identification CLI."""
    load_dotenv()

    args = build_parser().parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "train":
            return asyncio.run(run_train(args))
        if args.command == "compare":
            return asyncio.run(run_compare(args))
        return run_inspect(args)
    except FileNotFoundError as e:
        print(f"Error: Configuration file not found: {e}")
        return 1
    except yaml.YAMLError as e:
        print(f"Error: Error parsing configuration file: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
