import os
import sys
import argparse
import logging

# Add project root to Python path when run as a script
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from comic_crafter.core.checkpoint import InterventionChoice, InterventionDecision, PipelineStage, PipelineState, ResumeHint
from comic_crafter.core.config import PipelineConfig
from comic_crafter.core.errors import ComicGenerationError
from comic_crafter.core.pipeline import ComicPipeline
from comic_crafter.core.storage import HuggingFaceStorage, LocalStorage
from comic_crafter.agents.infrastructure.resilience_agent import ResilienceAgent
from comic_crafter.agents.production.image_generators import GeminiImageGenerator, MockImageGenerator
from comic_crafter.utils.checkpoint_manager import CheckpointManager
from comic_crafter.utils.image_utils import slugify, sniff_mime_type
from comic_crafter.utils.llm_interface import LLMInterface

logger = logging.getLogger("ComicGen")


def configure_logging(log_file: str = "pipeline.log"):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, mode='w', encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AI Comic Book Generator")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", type=str, help="Path to the character image that seeds the story")
    source.add_argument("--sample", action="store_true", help="Start from the bundled sample story")
    source.add_argument("--resume", type=str,
                        help="Progress archive path, or the name of a checkpoint under <output>/.checkpoints (e.g. autosave)")
    source.add_argument("--list_checkpoints", action="store_true", help="List saved checkpoints and exit")

    parser.add_argument("--output", type=str, default="output", help="Output directory")
    parser.add_argument("--storage", type=str, choices=["local", "hf"], default="local", help="Storage backend")
    parser.add_argument("--hf_repo", type=str, help="Hugging Face Repo ID (if storage=hf)")
    parser.add_argument("--hf_token", type=str, help="Hugging Face Token (optional if env var set)")

    parser.add_argument("--reasoning_model", type=str, default=None, help="Model for story planning and scripting")
    parser.add_argument("--fast_model", type=str, default=None, help="Model for dialogue polish, narration and verification")
    parser.add_argument("--image_model", type=str, default=None, help="Image model used for portraits, scenes and panels")
    parser.add_argument("--perspectives", type=str, choices=["single", "full"], default=None,
                        help="Render only a wide shot per location (single) or all four angles (full)")
    parser.add_argument("--mock", action="store_true", help="Use placeholder images instead of the image model")
    parser.add_argument("--auto_accept", action="store_true", help="Accept every panel that needs a human decision")
    return parser


def prompt_for_decision(state: PipelineState, auto_accept: bool = False) -> InterventionDecision:
    """Asks on stdin whether to keep a panel that failed the consistency check."""
    request = state.pending_intervention
    if auto_accept:
        logger.info(f"👤 Auto-accepting panel {request.panel_key} despite: {request.reason}")
        return InterventionDecision(choice=InterventionChoice.ACCEPT)

    print(f"\nPanel {request.panel_key} (attempt {request.attempt}): {request.character_name} looks off.")
    print(f"Reason: {request.reason}")
    while True:
        answer = input("Keep this image? [a]ccept / [r]etry: ").strip().lower()
        if answer in ("a", "accept"):
            return InterventionDecision(choice=InterventionChoice.ACCEPT)
        if answer in ("r", "retry", "reject"):
            note = input("Correction note (empty to reuse the reason): ").strip()
            return InterventionDecision(choice=InterventionChoice.RETRY, reason=note or None)


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging()

    # 1. Setup Storage
    if args.storage == "hf":
        if not args.hf_repo:
            logger.error("Must provide --hf_repo when usage storage=hf")
            return 2
        token = args.hf_token or os.environ.get("HF_TOKEN")
        if not token:
            logger.error("Must provide HF Token via --hf_token or env var HF_TOKEN")
            return 2
        storage = HuggingFaceStorage(repo_id=args.hf_repo, token=token, repo_type="dataset")
    else:
        storage = LocalStorage()

    checkpoint_dir = os.path.join(args.output, ".checkpoints")
    if args.list_checkpoints:
        checkpoints = CheckpointManager(storage, checkpoint_dir=checkpoint_dir)
        try:
            for cp in checkpoints.list_checkpoints():
                print(f"{cp['name']}: {cp['title'] or 'untitled'} - {cp['progress']}% ({cp['panels_generated']} panels)")
        finally:
            checkpoints.shutdown()
        return 0

    config = PipelineConfig.from_env(
        reasoning_model=args.reasoning_model,
        fast_model=args.fast_model,
        image_model=args.image_model,
        scene_perspectives=args.perspectives,
    )
    logger.info(f"🧠 Reasoning Model: {config.reasoning_model}")
    logger.info(f"⚡ Fast Model: {config.fast_model}")
    logger.info(f"🎨 Image Model: {'mock' if args.mock else config.image_model}")

    # 2. Pre-flight Health Checks
    llm = LLMInterface(model_name=config.reasoning_model)
    fast_llm = LLMInterface(model_name=config.fast_model)
    health = ResilienceAgent("ResilienceAgent").run(llm)
    if health["status"] == "unhealthy":
        logger.error("❌ TEXT MODEL BACKEND IS UNREACHABLE!")
        logger.info("💡 Check your API key or start the local model server.")
        return 1

    image_gen = MockImageGenerator() if args.mock else GeminiImageGenerator(model_id=config.image_model)
    checkpoint_mgr = CheckpointManager(storage, checkpoint_dir=checkpoint_dir)
    pipeline = ComicPipeline(llm, image_gen, config=config, checkpoint_manager=checkpoint_mgr,
                             fast_llm=fast_llm, autosave_name="autosave")

    def on_state(state: PipelineState):
        if state.stage == PipelineStage.AWAITING_INTERVENTION and state.pending_intervention is not None:
            decision = prompt_for_decision(state, args.auto_accept)
            pipeline.resolve_intervention(decision.choice, decision.reason)

    pipeline.subscribe(on_state)

    # 3. Execution Pipeline
    try:
        if args.resume:
            if os.path.isfile(args.resume):
                with open(args.resume, "rb") as f:
                    hint = pipeline.restore_archive(f.read())
            else:
                hint = pipeline.restore_checkpoint(args.resume)
                if hint is None:
                    logger.error(f"No progress archive or checkpoint named {args.resume}.")
                    return 1
            logger.info(f"🔄 Restored {args.resume} (resume hint: {hint.value}).")
            if hint == ResumeHint.VIEW_ONLY:
                logger.info("✅ This comic is already complete. Nothing to do.")
            else:
                pipeline.retry()
        elif args.sample:
            pipeline.start_from_sample()
        else:
            with open(args.image, "rb") as f:
                data = f.read()
            pipeline.start_from_image(data, sniff_mime_type(data))

        state = pipeline.snapshot()
        title = state.story.title if state.story else "comic"
        archive_path = storage.save_archive(pipeline.export_archive(), args.output, f"{slugify(title)}_progress.zip")
        logger.info(f"📦 Progress archive written to {archive_path}")
        if args.storage == "hf":
            storage.sync(source_dir=args.output, target_dir="comic_output")
            logger.info("Synced output to Hugging Face Hub successfully.")

        if state.error:
            logger.error(f"Pipeline halted: {state.error}")
            logger.info(f"💡 Resume later with: --resume {archive_path}")
            return 1

        logger.info(f"🚀 Comic Generation Complete! {len(state.generated_panels)} panels generated.")
        if state.story and state.story.full_text:
            text_path = os.path.join(args.output, f"{slugify(title)}.txt")
            with open(text_path, "w", encoding="utf-8") as f:
                f.write(state.story.full_text)
            logger.info(f"  - {text_path}")
        return 0

    except (OSError, ComicGenerationError) as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    finally:
        # Ensure all background tasks complete
        logger.info("⏳ Finalizing background tasks...")
        checkpoint_mgr.shutdown()


if __name__ == "__main__":
    sys.exit(main())
