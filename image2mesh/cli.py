from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

from config import Config
from core.generation.orchestrator import GenerationOrchestrator
from core.generation.provider_selector import Credentials, ProviderId, ProviderSelector
from core.normalizer import AssetNormalizer
from core.reconstruction.engine import ReconstructionEngine, save_material_maps
from image2mesh.errors import GenerationError, error_from_exception, make_error
from image2mesh.source_image import SourceImage, load_source_image

_PROVIDER_CHOICES = [p.value for p in ProviderId]


def _print(message: dict) -> None:
    print(json.dumps(message), flush=True)


def parse_api_keys(values: Optional[List[str]]) -> Dict[str, str]:
    """``["meshy=KEY", ...]`` → ``{"meshy": "KEY"}``."""
    keys = {}
    for item in values or []:
        provider_id, sep, key = item.partition("=")
        if not sep or provider_id not in _PROVIDER_CHOICES:
            raise argparse.ArgumentTypeError(f"Expected PROVIDER=KEY, got {item!r}")
        keys[provider_id] = key
    return keys


async def run_generate(args, config: Config, emit: Callable[[dict], None] = _print) -> int:
    def on_progress(index: int, provider_id: str, phase: str) -> None:
        emit(
            {
                "type": "progress",
                "command": "generate",
                "attemptIndex": index,
                "providerId": provider_id,
                "phase": phase,
            }
        )

    try:
        image = await load_source_image(str(args.image))
        credentials = Credentials.from_sources(parse_api_keys(args.api_key), config)
        queue = ProviderSelector.build_queue(config, preferred=args.provider, local_only=args.local_only)
        orchestrator = GenerationOrchestrator(config)
        model = await orchestrator.generate(image, queue, credentials, on_progress=on_progress)
        output = model.export(args.output)
    except GenerationError as exc:
        emit(error_from_exception("generate", exc))
        return 1
    except OSError:
        emit(make_error("generate", "FILE_IO_ERROR"))
        return 1

    emit(
        {
            "type": "success",
            "command": "generate",
            "outputPath": str(output),
            "sourceId": model.source_id,
            "scale": model.transform.scale,
            "attempts": [
                {"providerId": provider_id, "status": status}
                for provider_id, status in orchestrator.session.statuses()
            ],
        }
    )
    return 0


def run_reconstruct(args, config: Config, emit: Callable[[dict], None] = _print) -> int:
    try:
        image = SourceImage.from_path(args.image)
        result = ReconstructionEngine.from_config(config).build(image)
        normalizer = AssetNormalizer.from_config(config)
        model = normalizer.normalize(result.to_asset())
        output = model.export(args.output)
        maps = save_material_maps(result.material_maps, args.maps_dir) if args.maps_dir else {}
    except GenerationError as exc:
        emit(error_from_exception("reconstruct", exc))
        return 1
    except OSError:
        emit(make_error("reconstruct", "FILE_IO_ERROR"))
        return 1

    emit(
        {
            "type": "success",
            "command": "reconstruct",
            "outputPath": str(output),
            "sourceId": model.source_id,
            "vertices": len(result.mesh.vertices),
            "faces": len(result.mesh.faces),
            "materialMaps": maps,
        }
    )
    return 0


def run_providers(config: Config, emit: Callable[[dict], None] = _print) -> int:
    credentials = Credentials.from_sources(config=config)
    providers = []
    for provider in ProviderSelector.build_queue(config):
        info = ProviderSelector.get_provider_requirements(provider.id)
        providers.append(
            {
                "id": provider.id,
                "name": info.get("name", provider.id),
                "priority": provider.priority,
                "costTier": info.get("cost_tier"),
                "requiresApiKey": provider.requires_credential,
                "hasApiKey": credentials.has(provider.id),
                "timeoutSeconds": provider.timeout_seconds,
                "description": info.get("description", ""),
            }
        )
    emit({"type": "success", "command": "providers", "providers": providers})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="image2mesh", description="Single image to 3D model")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    sub = parser.add_subparsers(dest="action", required=True)

    generate_cmd = sub.add_parser("generate", help="Try providers in order, falling back to local")
    generate_cmd.add_argument("image", help="Image path or HTTP(S) URL")
    generate_cmd.add_argument("-o", "--output", type=Path, required=True)
    generate_cmd.add_argument(
        "--provider",
        action="append",
        choices=_PROVIDER_CHOICES,
        help="Restrict and order the provider queue (repeatable)",
    )
    generate_cmd.add_argument("--api-key", action="append", metavar="PROVIDER=KEY")
    generate_cmd.add_argument("--local-only", action="store_true", default=False)

    reconstruct_cmd = sub.add_parser("reconstruct", help="Local displacement reconstruction only")
    reconstruct_cmd.add_argument("image", type=Path)
    reconstruct_cmd.add_argument("-o", "--output", type=Path, required=True)
    reconstruct_cmd.add_argument("--maps-dir", type=Path, help="Also write material maps as PNG")

    sub.add_parser("providers", help="List the provider queue")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.action == "generate":
        try:
            parse_api_keys(args.api_key)
        except argparse.ArgumentTypeError as exc:
            parser.error(str(exc))

    config = Config(str(args.config)) if args.config else Config()

    if args.action == "providers":
        return run_providers(config)

    if args.action == "reconstruct":
        return run_reconstruct(args, config)

    try:
        return asyncio.run(run_generate(args, config))
    except KeyboardInterrupt:
        _print(make_error("generate", "OPERATION_CANCELLED"))
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
