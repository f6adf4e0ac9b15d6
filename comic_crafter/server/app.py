from fastapi import FastAPI, Request, BackgroundTasks, HTTPException, Path, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import os
import logging
from typing import Any, Callable, Dict, Optional
from comic_crafter.core.checkpoint import PipelineState
from comic_crafter.core.config import PipelineConfig
from comic_crafter.core.errors import PipelineError, RestoreError
from comic_crafter.core.pipeline import ComicPipeline
from comic_crafter.core.storage import LocalStorage
from comic_crafter.agents.production.image_generators import GeminiImageGenerator, MockImageGenerator
from comic_crafter.utils.checkpoint_manager import CheckpointManager
from comic_crafter.utils.image_utils import slugify
from comic_crafter.utils.llm_interface import LLMInterface

logger = logging.getLogger("ComicServer")

CHECKPOINT_NAME = r"^[A-Za-z0-9_-]+$"


class InterventionBody(BaseModel):
    choice: str
    reason: Optional[str] = None


def build_default_pipeline() -> ComicPipeline:
    """Pipeline configured from COMIC_* environment variables."""
    config = PipelineConfig.from_env()
    if os.getenv("COMIC_MOCK_IMAGES", "").lower() in ("1", "true", "yes"):
        image_gen = MockImageGenerator()
    else:
        image_gen = GeminiImageGenerator(model_id=config.image_model)
    return ComicPipeline(
        LLMInterface(model_name=config.reasoning_model),
        image_gen,
        config=config,
        checkpoint_manager=CheckpointManager(LocalStorage()),
        fast_llm=LLMInterface(model_name=config.fast_model),
        autosave_name="server_autosave",
    )


def summarize(state: PipelineState, running: bool = False) -> Dict[str, Any]:
    """JSON view of the state for polling clients. Binary assets are served separately."""
    pending = state.pending_intervention
    return {
        "stage": state.stage.value,
        "progress": state.progress,
        "status": state.status,
        "castStatus": state.cast_status,
        "error": state.error,
        "running": running,
        "isSample": state.is_sample,
        "resumeHint": state.resume_hint.value,
        "title": state.story.title if state.story else None,
        "characterProfile": state.character_profile.model_dump() if state.character_profile else None,
        "characters": [
            {"name": c.name, "role": c.role, "shots": sorted(k for k, v in c.images.items() if not v.is_placeholder)}
            for c in state.character_roster
        ],
        "scenes": {loc: sorted(plates) for loc, plates in state.scene_images.items()},
        "totalPanels": len(state.story.panels) if state.story else 0,
        "panels": [
            {"key": p.key, "page_number": p.page_number, "panel_number": p.panel_number}
            for p in state.generated_panels
        ],
        "pendingIntervention": None if pending is None else {
            "panelKey": pending.panel_key,
            "attempt": pending.attempt,
            "characterName": pending.character_name,
            "reason": pending.reason,
        },
        "fullText": state.story.full_text if state.story else None,
    }


def create_app(pipeline: Optional[ComicPipeline] = None) -> FastAPI:
    app = FastAPI(title="Comic Crafter Server")

    # Enable CORS for the web frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    holder: Dict[str, ComicPipeline] = {}
    if pipeline is not None:
        holder["pipeline"] = pipeline

    def get_pipeline() -> ComicPipeline:
        if "pipeline" not in holder:
            holder["pipeline"] = build_default_pipeline()
        return holder["pipeline"]

    def launch(background_tasks: BackgroundTasks, command: Callable, *args):
        """Claims the run slot before answering 202 so concurrent starts cannot both be accepted."""
        p = get_pipeline()
        try:
            token = p.reserve()
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e))

        def task():
            try:
                command(*args)
            except PipelineError as e:
                logger.warning(f"Run rejected: {e}")
            finally:
                p.release(token)

        background_tasks.add_task(task)

    @app.get("/api/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/api/state")
    async def get_state():
        p = get_pipeline()
        return summarize(p.snapshot(), p.is_running)

    @app.post("/api/start", status_code=202)
    async def start(request: Request, background_tasks: BackgroundTasks):
        """Starts a run from the raw image bytes in the request body."""
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="No image was uploaded.")
        content_type = request.headers.get("content-type", "")
        mime_type = content_type if content_type.startswith("image/") else None
        launch(background_tasks, get_pipeline().start_from_image, data, mime_type)
        return {"status": "started"}

    @app.post("/api/start/sample", status_code=202)
    async def start_sample(background_tasks: BackgroundTasks):
        launch(background_tasks, get_pipeline().start_from_sample)
        return {"status": "started"}

    @app.post("/api/retry", status_code=202)
    async def retry(background_tasks: BackgroundTasks):
        launch(background_tasks, get_pipeline().retry)
        return {"status": "started"}

    @app.post("/api/intervention")
    async def intervention(body: InterventionBody):
        try:
            get_pipeline().resolve_intervention(body.choice, body.reason)
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "resolved"}

    @app.post("/api/reset")
    def reset():
        """Starts over. A run waiting on a human decision is abandoned."""
        try:
            get_pipeline().reset()
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"status": "reset"}

    @app.get("/api/export")
    async def export():
        p = get_pipeline()
        state = p.snapshot()
        title = state.story.title if state.story else "comic"
        return Response(
            content=p.export_archive(),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{slugify(title)}_progress.zip"'},
        )

    @app.post("/api/restore")
    async def restore(request: Request):
        data = await request.body()
        try:
            hint = await run_in_threadpool(get_pipeline().restore_archive, data)
        except RestoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"resumeHint": hint.value}

    @app.get("/api/checkpoints")
    def list_checkpoints():
        return {"checkpoints": get_pipeline().checkpoint_manager.list_checkpoints()}

    @app.post("/api/checkpoints/{name}/load")
    def load_checkpoint(name: str = Path(..., pattern=CHECKPOINT_NAME)):
        try:
            hint = get_pipeline().restore_checkpoint(name)
        except RestoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if hint is None:
            raise HTTPException(status_code=404, detail=f"No checkpoint named '{name}'.")
        return {"resumeHint": hint.value}

    @app.delete("/api/checkpoints/{name}")
    def delete_checkpoint(name: str = Path(..., pattern=CHECKPOINT_NAME)):
        get_pipeline().checkpoint_manager.clear_checkpoint(name)
        return {"status": "deleted"}

    @app.get("/api/panels/{key}/image")
    async def panel_image(key: str):
        state = get_pipeline().snapshot()
        for panel in state.generated_panels:
            if panel.key == key and not panel.image.is_placeholder:
                return Response(content=panel.image.data, media_type=panel.image.mime_type)
        raise HTTPException(status_code=404, detail=f"Panel {key} has no image.")

    @app.get("/api/intervention/image")
    async def intervention_image(which: str = "generated"):
        """The image awaiting review, or with `which=reference` the character's canonical portrait."""
        pending = get_pipeline().snapshot().pending_intervention
        if pending is None:
            raise HTTPException(status_code=404, detail="No intervention is pending.")
        image = pending.reference_image if which == "reference" else pending.generated_image
        if image is None or image.is_placeholder:
            raise HTTPException(status_code=404, detail=f"No {which} image available.")
        return Response(content=image.data, media_type=image.mime_type)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
