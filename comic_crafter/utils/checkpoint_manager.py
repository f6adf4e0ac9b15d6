import io
import os
import json
import logging
import zipfile
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Type
from pydantic import BaseModel, ValidationError
from comic_crafter.core.checkpoint import PipelineStage, PipelineState, ResumeHint, progress_percent
from comic_crafter.core.errors import RestoreError
from comic_crafter.core.models import (
    CharacterConcept,
    CharacterProfile,
    GeneratedCharacter,
    GeneratedPanel,
    ImageAsset,
    StoryDevelopmentPackage,
    StoryOutline,
    location_key,
)
from comic_crafter.core.storage import StorageInterface, LocalStorage, HuggingFaceStorage
from comic_crafter.utils.image_utils import extension_for, mime_for_path, underscored

logger = logging.getLogger("CheckpointManager")

METADATA_FILE = "comic_metadata.json"


def portrait_dir(character_name: str) -> str:
    return f"portraits/{underscored(character_name)}"


def scene_dir(loc_key: str) -> str:
    return f"scenes/{underscored(loc_key)}"


def portrait_path(character_name: str, shot_key: str, mime_type: str) -> str:
    return f"{portrait_dir(character_name)}/{shot_key}{extension_for(mime_type)}"


def scene_path(loc_key: str, perspective_key: str, mime_type: str) -> str:
    return f"{scene_dir(loc_key)}/{perspective_key}{extension_for(mime_type)}"


def panel_path(page_number, panel_number: int, mime_type: str) -> str:
    page_id = str(page_number).replace("-", "_")
    return f"panels/page_{page_id}_panel_{panel_number}{extension_for(mime_type)}"


def _claim(claimed: Dict[str, str], base: str, owner: str) -> str:
    """
    Reserves `base` for `owner` within one archive. Distinct keys can flatten to the
    same path ("Ana Rook" and "Ana_Rook"), so later owners get `base_2`, `base_3`, ...
    """
    candidate, suffix = base, 2
    while claimed.setdefault(candidate, owner) != owner:
        candidate = f"{base}_{suffix}"
        suffix += 1
    return candidate


class _ArchiveReader:
    """Read access to an opened archive that never fails on a missing image."""
    def __init__(self, zf: zipfile.ZipFile):
        self.zf = zf
        self.names = set(zf.namelist())

    def find(self, stem: str) -> Optional[str]:
        """Archive member for a path without extension (`portraits/Rook/full`), if any."""
        for name in sorted(self.names):
            base, _ = os.path.splitext(name)
            if base == stem:
                return name
        return None

    def has(self, path: Any) -> bool:
        return isinstance(path, str) and path in self.names

    def image(self, path: Optional[str], name: str = "", mime_type: Optional[str] = None) -> ImageAsset:
        if self.has(path):
            return ImageAsset(name=name, data=self.zf.read(path), mime_type=mime_type or mime_for_path(path))
        if path:
            logger.warning(f"⚠️ Archive references {path} but the file is missing; using a placeholder.")
        return ImageAsset(name=name, data=b"", mime_type=mime_type or "image/jpeg")


class CheckpointManager:
    """
    Exports pipeline states to zip archives, restores them, and keeps named checkpoints
    on disk with a background push through the configured storage backend.
    """
    def __init__(self, storage: Optional[StorageInterface] = None, checkpoint_dir: str = ".checkpoints"):
        self.storage = storage or LocalStorage()
        self.checkpoint_dir = checkpoint_dir
        self._executor = ThreadPoolExecutor(max_workers=2)

    # ------------------------------------------------------------------ export

    def export_archive(self, state: PipelineState) -> bytes:
        """
        Serializes `state` into a zip archive. Every image is a separate file and the
        metadata document only stores paths.
        """
        buffer = io.BytesIO()
        claimed: Dict[str, str] = {}
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            roster = []
            for character in state.character_roster:
                folder = _claim(claimed, portrait_dir(character.name), f"character:{character.name}")
                images = {}
                for shot_key, image in character.images.items():
                    path = f"{folder}/{shot_key}{extension_for(image.mime_type)}"
                    if not image.is_placeholder:
                        zf.writestr(path, image.data)
                    images[shot_key] = path
                roster.append({
                    "role": character.role,
                    "name": character.name,
                    "description": character.description,
                    "images": images,
                })

            scenes: Dict[str, Dict[str, Any]] = {}
            for loc_key, plates in state.scene_images.items():
                folder = _claim(claimed, scene_dir(loc_key), f"scene:{loc_key}")
                scenes[loc_key] = {}
                for perspective_key, image in plates.items():
                    path = f"{folder}/{perspective_key}{extension_for(image.mime_type)}"
                    if not image.is_placeholder:
                        zf.writestr(path, image.data)
                    scenes[loc_key][perspective_key] = {"name": image.name, "path": path, "mimeType": image.mime_type}

            panels = []
            for panel in state.generated_panels:
                stem, ext = os.path.splitext(panel_path(panel.page_number, panel.panel_number, panel.image.mime_type))
                path = _claim(claimed, stem, f"panel:{panel.key}") + ext
                if not panel.image.is_placeholder:
                    zf.writestr(path, panel.image.data)
                entry = panel.model_dump(mode="json", exclude={"image"}, exclude_none=True)
                entry["imagePath"] = path
                entry["mimeType"] = panel.image.mime_type
                panels.append(entry)

            initial = None
            if state.source_image is not None and not state.source_image.is_placeholder:
                path = f"source/initial{extension_for(state.source_image.mime_type)}"
                zf.writestr(path, state.source_image.data)
                initial = {"path": path, "mimeType": state.source_image.mime_type}

            metadata = {
                "characterProfile": self._dump(state.character_profile),
                "storyDevelopmentPackage": self._dump(state.story_package),
                "story": self._dump(state.story),
                "characterConcepts": [c.model_dump(mode="json") for c in state.character_concepts],
                "characterRoster": roster,
                "sceneImages": scenes,
                "generatedPanels": panels,
                "initialImage": initial,
                "isSample": state.is_sample,
                "progress": state.progress,
                "status": state.status,
                "exportedAt": datetime.now(timezone.utc).isoformat(),
            }
            zf.writestr(METADATA_FILE, json.dumps(metadata, indent=2))

        logger.info(f"📦 Exported archive: {len(state.character_roster)} characters, "
                    f"{sum(len(p) for p in state.scene_images.values())} scenes, {len(state.generated_panels)} panels.")
        return buffer.getvalue()

    @staticmethod
    def _dump(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
        return model.model_dump(mode="json") if model is not None else None

    # ----------------------------------------------------------------- restore

    def restore_archive(self, data: bytes) -> Tuple[PipelineState, ResumeHint]:
        """
        Rebuilds a PipelineState from an archive produced by `export_archive`.
        Partial archives degrade gracefully; only a missing or unreadable metadata
        document (or a payload that is not a zip at all) is fatal.
        """
        try:
            zf = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            raise RestoreError(f"Archive is not a valid zip file: {e}") from e

        with zf:
            reader = _ArchiveReader(zf)
            if METADATA_FILE not in reader.names:
                raise RestoreError(f"Archive has no {METADATA_FILE}.")
            try:
                metadata = json.loads(zf.read(METADATA_FILE).decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise RestoreError(f"Could not parse {METADATA_FILE}: {e}") from e
            if not isinstance(metadata, dict):
                raise RestoreError(f"{METADATA_FILE} must contain a JSON object.")

            state = PipelineState(
                character_profile=self._section(CharacterProfile, metadata.get("characterProfile"), "characterProfile"),
                story_package=self._section(StoryDevelopmentPackage, metadata.get("storyDevelopmentPackage"), "storyDevelopmentPackage"),
                story=self._section(StoryOutline, metadata.get("story"), "story"),
                is_sample=bool(metadata.get("isSample", False)),
            )
            state.character_concepts = self._restore_concepts(metadata.get("characterConcepts"))
            state.character_roster = self._restore_roster(reader, metadata.get("characterRoster"), state.character_concepts)
            if not state.character_concepts and state.character_roster:
                logger.info("Rebuilding character concepts from the roster.")
                state.character_concepts = [c.to_concept() for c in state.character_roster]
            state.scene_images = self._restore_scenes(reader, metadata.get("sceneImages"), state.story)
            state.generated_panels = self._restore_panels(reader, metadata.get("generatedPanels"), state.story)
            state.source_image = self._restore_initial_image(reader, metadata.get("initialImage"), state)

        hint = state.resume_hint
        self._position(state, hint, metadata)
        logger.info(f"🔄 Archive restored. Resume hint: {hint.value}")
        return state, hint

    def _section(self, model: Type[BaseModel], payload: Any, label: str):
        if not payload:
            return None
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"⚠️ Ignoring unreadable '{label}' section: {e}")
            return None

    @staticmethod
    def _shaped(payload: Any, kind: type, label: str):
        """`payload` if it has the expected JSON shape, otherwise None with a warning."""
        if isinstance(payload, kind):
            return payload
        logger.warning(f"⚠️ Ignoring '{label}' section: expected a JSON {'object' if kind is dict else 'array'}, "
                       f"got {type(payload).__name__}.")
        return None

    def _restore_concepts(self, payload: Any) -> List[CharacterConcept]:
        concepts = []
        if payload is None:
            return concepts
        for item in self._shaped(payload, list, "characterConcepts") or []:
            concept = self._section(CharacterConcept, item, "characterConcepts")
            if concept is not None:
                concepts.append(concept)
        return concepts

    def _restore_roster(self, reader: _ArchiveReader, payload: Any, concepts: List[CharacterConcept]) -> List[GeneratedCharacter]:
        roster: List[GeneratedCharacter] = []
        if payload is None:
            # Older archives only carry the portrait files; match them to the concepts.
            for concept in concepts:
                prefix = f"{portrait_dir(concept.name)}/"
                images = {}
                for name in sorted(n for n in reader.names if n.startswith(prefix)):
                    shot_key = os.path.splitext(name[len(prefix):])[0]
                    images[shot_key] = reader.image(name, f"{concept.name} ({shot_key})")
                if images:
                    roster.append(GeneratedCharacter(**concept.model_dump(), images=images))
            return roster

        for item in self._shaped(payload, list, "characterRoster") or []:
            try:
                concept = CharacterConcept(role=item["role"], name=item["name"], description=item.get("description", ""))
                paths = item.get("images") or {}
                images = {
                    shot_key: reader.image(path, f"{concept.name} ({shot_key})")
                    for shot_key, path in paths.items()
                }
            except (KeyError, TypeError, AttributeError, ValidationError) as e:
                logger.warning(f"⚠️ Skipping unreadable roster entry: {e}")
                continue
            roster.append(GeneratedCharacter(**concept.model_dump(), images=images))
        return roster

    def _restore_scenes(self, reader: _ArchiveReader, payload: Any, story: Optional[StoryOutline]) -> Dict[str, Dict[str, ImageAsset]]:
        scenes: Dict[str, Dict[str, ImageAsset]] = {}
        if payload is None:
            if story is None:
                return scenes
            for panel in story.panels:
                loc_key = location_key(panel.visuals.setting.location)
                if loc_key in scenes:
                    continue
                prefix = f"{scene_dir(loc_key)}/"
                plates = {}
                for name in sorted(n for n in reader.names if n.startswith(prefix)):
                    perspective_key = os.path.splitext(name[len(prefix):])[0]
                    plates[perspective_key] = reader.image(name, f"{panel.visuals.setting.location} ({perspective_key})")
                if plates:
                    scenes[loc_key] = plates
            return scenes

        for loc_key, plates in (self._shaped(payload, dict, "sceneImages") or {}).items():
            if not isinstance(plates, dict):
                logger.warning(f"⚠️ Skipping unreadable scene entry for '{loc_key}'.")
                continue
            restored = {}
            for perspective_key, entry in plates.items():
                if isinstance(entry, str):
                    entry = {"path": entry}
                try:
                    restored[perspective_key] = reader.image(entry.get("path"), entry.get("name", ""), entry.get("mimeType"))
                except (AttributeError, TypeError, ValidationError) as e:
                    logger.warning(f"⚠️ Skipping unreadable scene '{loc_key}' ({perspective_key}): {e}")
            scenes[loc_key] = restored
        return scenes

    def _restore_panels(self, reader: _ArchiveReader, payload: Any, story: Optional[StoryOutline]) -> List[GeneratedPanel]:
        panels: List[GeneratedPanel] = []
        if payload is None:
            if story is None:
                return panels
            for panel in story.panels:
                page_id = str(panel.page_number).replace("-", "_")
                name = reader.find(f"panels/page_{page_id}_panel_{panel.panel_number}")
                if name is not None:
                    image = reader.image(name, f"Page {panel.page_number}, Panel {panel.panel_number}")
                    panels.append(GeneratedPanel(**panel.model_dump(), image=image))
            return panels

        seen = set()
        for item in self._shaped(payload, list, "generatedPanels") or []:
            try:
                entry = dict(item)
                path = entry.pop("imagePath", None)
                mime_type = entry.pop("mimeType", None)
                panel = GeneratedPanel.model_validate({
                    **entry,
                    "image": reader.image(path, f"Page {entry.get('page_number')}, Panel {entry.get('panel_number')}", mime_type),
                })
            except (TypeError, ValueError) as e:
                logger.warning(f"⚠️ Skipping unreadable generated panel: {e}")
                continue
            if panel.key in seen:
                logger.warning(f"⚠️ Duplicate generated panel {panel.key} in archive; keeping the first.")
                continue
            seen.add(panel.key)
            panels.append(panel)
        return panels

    def _restore_initial_image(self, reader: _ArchiveReader, payload: Any, state: PipelineState) -> Optional[ImageAsset]:
        if isinstance(payload, str):
            payload = {"path": payload}
        elif payload is not None:
            payload = self._shaped(payload, dict, "initialImage")
        if payload and reader.has(payload.get("path")):
            try:
                return reader.image(payload["path"], "initial", payload.get("mimeType"))
            except ValidationError as e:
                logger.warning(f"⚠️ Ignoring unreadable 'initialImage' section: {e}")
        protagonist = state.protagonist
        if protagonist is not None:
            full = protagonist.images.get("full")
            if full is not None and not full.is_placeholder:
                logger.info(f"No seed image in archive; using {protagonist.name}'s full portrait.")
                return full
        return None

    @staticmethod
    def _position(state: PipelineState, hint: ResumeHint, metadata: Dict[str, Any]):
        """Places the restored state at the stage its resume hint points to."""
        total = len(state.story.panels) if state.story else 0
        if hint == ResumeHint.VIEW_ONLY:
            state.stage = PipelineStage.FINALIZE
            state.progress = 100
            state.status = "Restored a finished comic."
        elif hint == ResumeHint.RESUME_PANELS:
            state.stage = PipelineStage.PANEL_GENERATION
            state.progress = progress_percent(len(state.generated_panels), total)
            status = metadata.get("status")
            state.status = status if isinstance(status, str) and status else "Restored. Ready to resume panel generation."
        elif hint == ResumeHint.RESUME_ASSETS:
            state.stage = PipelineStage.PORTRAIT_GENERATION
            state.cast_status = "Restored. Ready to resume asset generation."
        else:
            state.stage = PipelineStage.CHARACTER_SETUP

    # ------------------------------------------------------------- checkpoints

    def get_checkpoint_path(self, name: str) -> str:
        return os.path.join(self.checkpoint_dir, f"checkpoint_{name}.zip")

    def save_checkpoint(self, state: PipelineState, name: str) -> str:
        """Saves the state locally and pushes it through the storage backend in the background."""
        os.makedirs(self.checkpoint_dir, exist_ok=True)
        path = self.get_checkpoint_path(name)
        with open(path, "wb") as f:
            f.write(self.export_archive(state))
        logger.info(f"💾 Checkpoint saved locally to {path}")
        self._executor.submit(self._background_sync, path)
        return path

    def _background_sync(self, path: str):
        remote_path = path.replace("\\", "/")
        max_retries = 3
        for attempt in range(max_retries):
            try:
                self.storage.save_file(path, remote_path)
                logger.info(f"☁️ Background checkpoint sync complete (Attempt {attempt+1}).")
                return
            except Exception as e:
                if attempt == max_retries - 1:
                    logger.warning(f"⚠️ Background checkpoint sync failed: {e}")
                    return
                logger.warning(f"Checkpoint upload attempt {attempt+1} failed: {e}. Retrying...")

    def load_checkpoint(self, name: str) -> Optional[Tuple[PipelineState, ResumeHint]]:
        """Loads a named checkpoint, or None if there is none."""
        path = self.get_checkpoint_path(name)
        if not os.path.exists(path) and isinstance(self.storage, HuggingFaceStorage):
            try:
                logger.info(f"🔍 Checkpoint missing locally. Attempting to pull from Hugging Face: {path}")
                self.storage.download_file(path, ".")
                logger.info("☁️ Successfully pulled checkpoint from Hugging Face.")
            except Exception as e:
                logger.debug(f"Hugging Face pull failed or file does not exist: {e}")
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return self.restore_archive(f.read())

    def list_checkpoints(self) -> List[Dict[str, Any]]:
        """Lists all available checkpoints with summary info, newest first."""
        checkpoints = []
        if not os.path.exists(self.checkpoint_dir):
            return []

        for filename in os.listdir(self.checkpoint_dir):
            if not (filename.startswith("checkpoint_") and filename.endswith(".zip")):
                continue
            path = os.path.join(self.checkpoint_dir, filename)
            try:
                with zipfile.ZipFile(path) as zf:
                    data = json.loads(zf.read(METADATA_FILE).decode("utf-8"))
                checkpoints.append({
                    "name": filename[len("checkpoint_"):-len(".zip")],
                    "title": (data.get("story") or {}).get("title"),
                    "progress": data.get("progress", 0),
                    "panels_generated": len(data.get("generatedPanels") or []),
                    "timestamp": os.path.getmtime(path),
                })
            except (zipfile.BadZipFile, KeyError, ValueError, AttributeError) as e:
                logger.warning(f"Failed to parse checkpoint {filename}: {e}")

        checkpoints.sort(key=lambda x: x["timestamp"], reverse=True)
        return checkpoints

    def clear_checkpoint(self, name: str):
        path = self.get_checkpoint_path(name)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"🗑️ Checkpoint {path} cleared.")

    def shutdown(self, wait: bool = True):
        """Shuts down the background executor."""
        self._executor.shutdown(wait=wait)
        logger.info("⚙️ CheckpointManager background executor shut down.")
