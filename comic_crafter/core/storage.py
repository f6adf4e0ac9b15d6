import os
import shutil
from abc import ABC, abstractmethod
import logging
from huggingface_hub import HfApi

logger = logging.getLogger(__name__)

class StorageInterface(ABC):
    @abstractmethod
    def save_file(self, local_path: str, remote_path: str) -> str:
        pass

    @abstractmethod
    def sync(self, source_dir: str, target_dir: str):
        pass

    def save_archive(self, data: bytes, output_dir: str, file_name: str) -> str:
        """
        Writes an exported archive into `output_dir` and returns where it ended up.
        """
        os.makedirs(output_dir, exist_ok=True)
        local_path = os.path.join(output_dir, file_name)
        with open(local_path, "wb") as f:
            f.write(data)
        return local_path

class LocalStorage(StorageInterface):
    """
    Simple local storage. Remote path is just another local path.
    """
    def save_file(self, local_path: str, remote_path: str) -> str:
        if os.path.abspath(local_path) != os.path.abspath(remote_path):
            os.makedirs(os.path.dirname(os.path.abspath(remote_path)), exist_ok=True)
            shutil.copy2(local_path, remote_path)
        return remote_path

    def sync(self, source_dir: str, target_dir: str):
        shutil.copytree(source_dir, target_dir, dirs_exist_ok=True)

class HuggingFaceStorage(StorageInterface):
    """
    Storage backend that mirrors checkpoints and exports to a Hugging Face Dataset or Model repo.
    """
    def __init__(self, repo_id: str, token: str, repo_type: str = "dataset", api: HfApi = None):
        self.api = api or HfApi(token=token)
        self.repo_id = repo_id
        self.repo_type = repo_type

        try:
            self.api.create_repo(repo_id=repo_id, repo_type=repo_type, exist_ok=True)
            logger.info(f"Connected to Hugging Face Repo: {repo_id}")
        except Exception as e:
            logger.error(f"Failed to create/connect to HF Repo: {e}")
            raise

    def save_file(self, local_path: str, remote_path: str) -> str:
        """
        Uploads a single file.
        """
        remote_path = self._normalize_path(remote_path)
        self.api.upload_file(
            path_or_fileobj=local_path,
            path_in_repo=remote_path,
            repo_id=self.repo_id,
            repo_type=self.repo_type
        )
        return f"hf://{self.repo_id}/{remote_path}"

    def sync(self, source_dir: str, target_dir: str = ""):
        """
        Uploads an entire directory.
        """
        logger.info(f"Uploading {source_dir} to Hugging Face {self.repo_id}...")
        self.api.upload_folder(
            folder_path=source_dir,
            path_in_repo=self._normalize_path(target_dir),
            repo_id=self.repo_id,
            repo_type=self.repo_type
        )

    def download_file(self, remote_path: str, local_dir: str) -> str:
        from huggingface_hub import hf_hub_download
        return hf_hub_download(
            repo_id=self.repo_id,
            filename=self._normalize_path(remote_path),
            repo_type=self.repo_type,
            local_dir=local_dir,
            token=self.api.token,
        )

    def _normalize_path(self, path: str) -> str:
        """Converts Windows paths to HF-compatible forward slash paths."""
        return path.replace("\\", "/")
