from __future__ import annotations

import logging
from typing import List, Optional

from .errors import FileNotFound, ValidationError
from .models import FileItem, new_id
from .store import LocalBlobStore, MemoryBackend, ProgressCallback

log = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


class Library:
    """Folder tree of uploaded files for each user."""

    def __init__(self, backend: MemoryBackend, blobs: LocalBlobStore) -> None:
        self.backend = backend
        self.blobs = blobs

    def get(self, file_id: str, user_id: str) -> FileItem:
        item = self.backend.get_file(file_id, user_id)
        if item is None:
            raise FileNotFound(f"File {file_id} not found")
        return item

    def _folder(self, folder_id: Optional[str], user_id: str) -> Optional[FileItem]:
        if folder_id is None:
            return None
        folder = self.get(folder_id, user_id)
        if not folder.is_folder:
            raise ValidationError(f"{folder.name} is not a folder")
        return folder

    def list(self, parent_id: Optional[str], user_id: str) -> List[FileItem]:
        self._folder(parent_id, user_id)
        return self.backend.query_files(user_id, parent_id)

    def create_folder(self, name: str, parent_id: Optional[str], user_id: str) -> FileItem:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Folder name is required")
        self._folder(parent_id, user_id)
        folder = FileItem(id=new_id(), name=name, type="folder", parent_id=parent_id, user_id=user_id)
        return self.backend.add_file(folder)

    def upload_file(
        self,
        name: str,
        data: bytes,
        parent_id: Optional[str],
        user_id: str,
        content_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> FileItem:
        name = (name or "").strip()
        if not name:
            raise ValidationError("File name is required")
        self._folder(parent_id, user_id)
        file_id = new_id()
        key = self.blobs.make_key(user_id, f"{file_id}-{name}")
        url = self.blobs.upload(key, data, progress)
        item = FileItem(
            id=file_id,
            name=name,
            type="file",
            parent_id=parent_id,
            user_id=user_id,
            file_url=url,
            file_size=len(data),
            file_type=content_type or (PDF_MIME if name.lower().endswith(".pdf") else None),
            blob_key=key,
        )
        return self.backend.add_file(item)

    def parent_of(self, file_id: str, user_id: str) -> Optional[FileItem]:
        item = self.get(file_id, user_id)
        if item.parent_id is None:
            return None
        return self.backend.get_file(item.parent_id, user_id)

    def path(self, file_id: Optional[str], user_id: str) -> List[FileItem]:
        """Breadcrumb from the top-level folder down to `file_id`."""
        trail: List[FileItem] = []
        seen = set()
        current = self.get(file_id, user_id) if file_id else None
        while current is not None and current.id not in seen:
            seen.add(current.id)
            trail.insert(0, current)
            if current.parent_id is None:
                break
            current = self.backend.get_file(current.parent_id, user_id)
        return trail

    def move(self, file_id: str, target_parent_id: Optional[str], user_id: str) -> FileItem:
        item = self.get(file_id, user_id)
        target = self._folder(target_parent_id, user_id)
        if target is not None and item.is_folder:
            ancestry = {f.id for f in self.path(target.id, user_id)}
            if item.id in ancestry:
                raise ValidationError("Cannot move a folder into itself")
        return self.backend.update_file(file_id, user_id, parent_id=target_parent_id)

    def walk(self, file_id: str, user_id: str) -> List[FileItem]:
        """`file_id` and everything below it, parents before children."""
        item = self.get(file_id, user_id)
        out = [item]
        if item.is_folder:
            for child in self.backend.query_files(user_id, item.id):
                out.extend(self.walk(child.id, user_id))
        return out

    def delete(self, file_id: str, user_id: str) -> None:
        item = self.get(file_id, user_id)
        if item.is_folder:
            for child in self.backend.query_files(user_id, item.id):
                self.delete(child.id, user_id)
        else:
            if item.blob_key:
                self.blobs.delete(item.blob_key)
            notes = self.backend.delete_notes_for_file(item.id, user_id)
            analyses = self.backend.delete_analyses_for_file(item.id, user_id)
            log.info("Deleted %s with %d notes and %d analyses", item.name, notes, analyses)
        self.backend.delete_file(item.id, user_id)

    def read_pdf(self, file_id: str, user_id: str) -> bytes:
        item = self.get(file_id, user_id)
        if not item.is_pdf or not item.blob_key:
            raise ValidationError(f"{item.name} is not a PDF")
        return self.blobs.read(item.blob_key)
