# scripts/smoke.py
"""
Smoke test script for the codemap pipeline against a live model.

Usage
-----
1. Map this repository with the default query:
    $ python scripts/smoke.py

2. Map another workspace:
    $ python scripts/smoke.py --workspace ../my-service --query "trace the login flow"

Requires OPENAI_API_KEY (read from `.env` when present).
"""

import argparse
import asyncio
import logging
import sys
import traceback
from pathlib import Path

from dotenv import load_dotenv

from codemap.agents.callbacks import PipelineCallbacks
from codemap.core.errors import CodemapError
from codemap.core.settings import PipelineConfig, load_settings
from codemap.llm.client import OpenAIChatSession
from codemap.pipelines.codemap_generation import CodemapPipeline

# --------------------------------------------------------------------------- #
# Environment Setup
# --------------------------------------------------------------------------- #
env_path = Path(".env")
if env_path.exists():
    load_dotenv(env_path)
    print("✅ Loaded .env file")
else:
    print("⚠️  Warning: No .env file found! The model session may lack a key.")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

DEFAULT_QUERY = "How does a codemap get from the CLI command to the saved JSON file?"


def main() -> None:
    """Execute the smoke test workflow."""
    parser = argparse.ArgumentParser(description="Run a codemap smoke test")
    parser.add_argument("--workspace", "-w", default=".", help="Workspace root")
    parser.add_argument("--query", "-q", default=DEFAULT_QUERY, help="Question to map")
    parser.add_argument("--mode", "-m", choices=["fast", "smart"], default="fast")
    args = parser.parse_args()

    settings = load_settings()
    callbacks = PipelineCallbacks(
        on_phase_change=lambda name, n: print(f"\n▶ Stage {n}: {name}"),
        on_tool_call=lambda name, arguments, _preview: print(f"  🔧 {name} {arguments}"),
        on_trace_stage=lambda tid, stage, status: print(f"  🧵 trace {tid} stage {stage} {status}"),
    )
    pipeline = CodemapPipeline(
        OpenAIChatSession.from_settings(settings),
        PipelineConfig.from_settings(settings, mode=args.mode),
        callbacks=callbacks,
    )

    try:
        codemap = asyncio.run(pipeline.generate(args.query, Path(args.workspace).resolve()))
    except CodemapError as exc:
        print(f"\n❌ Pipeline failed: {exc}")
        traceback.print_exc()
        return

    if codemap is None:
        print("\n❌ Structure stage produced no codemap")
        return

    print("\n" + "=" * 60)
    print("✅ Pipeline Finished Successfully!")
    print("=" * 60)
    print(f"\n📝 Title: {codemap.title}")
    for trace in codemap.traces:
        status = f"❌ {trace.error}" if trace.error else "ok"
        print(f"  - [{trace.id}] {trace.title}: {len(trace.locations)} locations ({status})")
    print(f"\n🗺  Mermaid diagram: {len(codemap.mermaid_diagram or '')} chars")


if __name__ == "__main__":
    main()
