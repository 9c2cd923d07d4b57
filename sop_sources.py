import json
import logging
import os
from pathlib import Path

from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SOP_EXTENSIONS = (".txt", ".md")
GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]


class InvalidPayload(ValueError):
    """Raised when a /sync-sops body is not a list of {filename, content}."""


class SourceError(RuntimeError):
    """A configured SOP source could not be read."""


# -------------------------------
# Local files
# -------------------------------
def load_directory(path) -> list[tuple]:
    """
    Read every .txt / .md file directly under `path` as (filename, text),
    sorted by filename. A missing directory yields no documents.
    """
    root = Path(path)
    if not root.is_dir():
        logger.warning("SOP directory %s does not exist", root)
        return []

    documents = []
    for p in sorted(root.iterdir(), key=lambda p: p.name):
        if not p.is_file() or p.suffix.lower() not in SOP_EXTENSIONS:
            continue
        documents.append((p.name, p.read_text(encoding="utf-8", errors="replace")))
    logger.info("Loaded %d SOP files from %s", len(documents), root)
    return documents


# -------------------------------
# Google Drive
# -------------------------------
def get_drive_service():
    """
    Build a read-only Google Drive service using a service account JSON stored in
    GOOGLE_SERVICE_ACCOUNT_JSON.
    """
    service_account_raw = os.environ.get("GOOGLE_SERVICE_ACCOUNT_JSON")
    if not service_account_raw:
        raise RuntimeError("GOOGLE_SERVICE_ACCOUNT_JSON not set")

    info = json.loads(service_account_raw)
    creds = service_account.Credentials.from_service_account_info(
        info,
        scopes=DRIVE_SCOPES,
    )
    return build("drive", "v3", credentials=creds)


def _as_text(data) -> str:
    # googleapiclient may already give str
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def list_drive_files(drive, folder_id: str) -> list[dict]:
    """All non-trashed files in the folder, following nextPageToken."""
    files = []
    page_token = None
    while True:
        resp = drive.files().list(
            q=f"'{folder_id}' in parents and trashed = false",
            pageSize=100,
            fields="nextPageToken, files(id, name, mimeType)",
            pageToken=page_token,
        ).execute()
        files.extend(resp.get("files", []))
        page_token = resp.get("nextPageToken")
        if not page_token:
            break
    return files


def load_drive_folder(folder_id: str, drive=None) -> list[tuple]:
    """
    Export the SOP docs in a Drive folder as (name, plain text). Google Docs are
    exported to text/plain; .txt/.md uploads are downloaded as-is; anything
    else is skipped.
    """
    if not folder_id:
        raise RuntimeError("SOP_DRIVE_FOLDER_ID not set")
    drive = drive or get_drive_service()

    documents = []
    for f in list_drive_files(drive, folder_id):
        name = f.get("name") or f["id"]
        mime = f.get("mimeType", "")
        if mime == GOOGLE_DOC_MIME:
            data = drive.files().export(fileId=f["id"], mimeType="text/plain").execute()
        elif mime.startswith("text/") or name.lower().endswith(SOP_EXTENSIONS):
            data = drive.files().get_media(fileId=f["id"]).execute()
        else:
            logger.debug("Skipping Drive file %s (%s)", name, mime)
            continue
        documents.append((name, _as_text(data)))

    logger.info("Loaded %d SOP docs from Drive folder %s", len(documents), folder_id)
    return documents


# -------------------------------
# Sync payloads
# -------------------------------
def parse_sync_payload(body) -> list[tuple]:
    """
    Validate a sync body of the form
      {"files": [{"filename": "casa-amore.txt", "content": "..."}, ...]}
    and return (filename, content) pairs in the order given.
    """
    if not isinstance(body, dict):
        raise InvalidPayload("Invalid file data")
    files = body.get("files")
    if not isinstance(files, list):
        raise InvalidPayload("Invalid file data")

    documents = []
    for item in files:
        if not isinstance(item, dict):
            raise InvalidPayload("Invalid file data")
        name = item.get("filename")
        content = item.get("content")
        if not isinstance(name, str) or not name.strip() or not isinstance(content, str):
            raise InvalidPayload("Invalid file data")
        documents.append((name, content))
    return documents


def load_configured_sources(sop_dir=None, drive_folder_id=None, strict=False) -> list[tuple]:
    """
    Local directory first, then Drive. At startup (strict=False) a failing
    source is logged and skipped so the bot still comes up; on a reload
    (strict=True) it raises SourceError so the caller keeps its current index.
    """
    documents = []
    failures = []
    if sop_dir:
        try:
            documents.extend(load_directory(sop_dir))
        except OSError as e:
            logger.error(f"Error reading SOP directory {sop_dir}: {e}")
            failures.append(f"directory {sop_dir}: {e}")
    if drive_folder_id:
        try:
            documents.extend(load_drive_folder(drive_folder_id))
        except Exception as e:
            logger.error(f"Error loading SOPs from Google Drive: {e}")
            failures.append(f"Google Drive: {e}")

    if failures and strict:
        raise SourceError("; ".join(failures))
    return documents
