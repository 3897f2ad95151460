import os
import shutil
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Request
from pydantic import BaseModel, ConfigDict
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from log_service import AppLogger
from config_service import Settings
from extract_service import ExtractError, extract_zip
from stream_service import LineEmitter
from task_service import RunError, run_task, run_task_stream

MB = 1 << 20

SCRIPT_NONE = "none"
SCRIPT_OPTIONAL = "optional"
SCRIPT_REQUIRED = "required"


class ClientInputError(Exception):
    """Rejected request; reported as a plain HTTP error before any stream is opened."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class SaveError(RuntimeError):
    pass


class EndpointProfile(BaseModel):
    name: str
    accepts_file: bool = True
    require_target: bool = True
    default_target: Optional[str] = None
    script: str = SCRIPT_NONE
    check_extension: bool = False
    streaming: bool = True
    delete_archive: bool = True
    max_upload_mb: int = 500
    start_message: Optional[str] = None


class UploadRequest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    file: Optional[UploadFile] = None
    file_name: str = ""
    target_dir: str
    script: Optional[str] = None


def build_profiles(settings: Settings) -> Dict[str, EndpointProfile]:
    return {
        "/upload-only": EndpointProfile(
            name="upload_only",
            max_upload_mb=settings.max_upload_mb,
            start_message="Starting upload process",
        ),
        "/upload-script": EndpointProfile(
            name="upload_script",
            script=SCRIPT_REQUIRED,
            max_upload_mb=settings.max_upload_mb,
            start_message="Starting upload + script execution",
        ),
        "/run-script": EndpointProfile(
            name="run_script",
            accepts_file=False,
            require_target=False,
            default_target=settings.run_script_default_target,
            script=SCRIPT_REQUIRED,
            delete_archive=False,
            max_upload_mb=settings.max_upload_mb,
        ),
        "/upload": EndpointProfile(
            name="upload",
            require_target=False,
            default_target=settings.upload_default_target,
            script=SCRIPT_OPTIONAL,
            check_extension=True,
            streaming=False,
            delete_archive=False,
            max_upload_mb=settings.max_simple_upload_mb,
        ),
    }


def _reject(logger: AppLogger, status_code: int, message: str, cause: Optional[BaseException] = None) -> ClientInputError:
    if cause is not None:
        logger.log(f"{message}: {cause}", "ERR")
    else:
        logger.log(message, "ERR")
    return ClientInputError(status_code, message)


def _text_field(form: Any, name: str) -> str:
    """Field value as sent, or "" when missing or blank."""
    value = form.get(name)
    if isinstance(value, str) and value.strip():
        return value
    return ""


def _upload_name(filename: str) -> str:
    name = os.path.basename(filename.replace("\\", "/"))
    if name in ("", ".", ".."):
        return ""
    return name


async def parse_request(request: Request, profile: EndpointProfile, settings: Settings, logger: AppLogger) -> UploadRequest:
    """Validate method and form fields. Raises ClientInputError; touches no files."""
    if request.method != "POST":
        raise ClientInputError(405, "Invalid request method")

    limit = profile.max_upload_mb * MB
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise _reject(logger, 400, "Error parsing form", ValueError(f"request body exceeds {profile.max_upload_mb} MB"))
    try:
        form = await request.form()
    except (MultiPartException, StarletteHTTPException, ValueError) as e:
        raise _reject(logger, 400, "Error parsing form", e)

    upload: Optional[UploadFile] = None
    file_name = ""
    if profile.accepts_file:
        value = form.get("file")
        if not isinstance(value, UploadFile) or not value.filename:
            raise _reject(logger, 400, "File is required")
        file_name = _upload_name(value.filename)
        if not file_name:
            raise _reject(logger, 400, "File is required", ValueError(f"unusable file name {value.filename!r}"))
        if value.size is not None and value.size > limit:
            raise _reject(logger, 400, "Error parsing form", ValueError(f"file exceeds {profile.max_upload_mb} MB"))
        if profile.check_extension and not file_name.lower().endswith(settings.archive_extension):
            raise _reject(logger, 400, f"Only {settings.archive_extension} files are allowed")
        upload = value

    script: Optional[str] = None
    if profile.script == SCRIPT_REQUIRED and not profile.accepts_file:
        script = _text_field(form, "script")
        if not script:
            raise _reject(logger, 400, "Script is required")

    target = _text_field(form, "target")
    if not target:
        if profile.require_target or not profile.default_target:
            raise _reject(logger, 400, "Target directory is required")
        target = profile.default_target

    if profile.accepts_file and profile.script != SCRIPT_NONE:
        script = _text_field(form, "script") or None
        if profile.script == SCRIPT_REQUIRED and not script:
            raise _reject(logger, 400, "Script is required")

    return UploadRequest(file=upload, file_name=file_name, target_dir=target, script=script)


def save_upload(req: UploadRequest, emit: Optional[Callable[[str], None]] = None) -> str:
    """Copy the uploaded file part to target_dir/file_name and return that path."""
    try:
        os.makedirs(req.target_dir, exist_ok=True)
    except OSError as e:
        raise SaveError(f"could not create target dir: {e}")

    zip_path = os.path.join(req.target_dir, req.file_name)
    try:
        out = open(zip_path, "wb")
    except OSError as e:
        raise SaveError(f"could not create file: {e}")
    with out:
        if emit:
            emit(f"Saving file to {zip_path}")
        try:
            req.file.file.seek(0)
            shutil.copyfileobj(req.file.file, out)
        except OSError as e:
            raise SaveError(f"could not save file: {e}")
    return zip_path


def delete_archive(zip_path: str, logger: AppLogger, emit: Optional[Callable[[str], None]] = None) -> bool:
    try:
        os.remove(zip_path)
    except OSError as e:
        logger.log(f"Failed to delete zip file {zip_path}: {e}", "WARN")
        return False
    if emit:
        emit(f"Deleted zip file {zip_path}")
    return True


def save_and_extract(
    req: UploadRequest,
    profile: EndpointProfile,
    logger: AppLogger,
    emit: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    logger.log("Saving and extracting ZIP stream...")
    zip_path = save_upload(req, emit)

    if emit:
        emit("Extracting ZIP...")
    try:
        result = extract_zip(zip_path, req.target_dir, emit=(lambda p: emit(f"Extracted: {p}")) if emit else None)
    except ExtractError as e:
        raise ExtractError(e.kind, f"extract failed: {e}", entry=e.entry, cause=e.cause) from e
    if result["skipped"]:
        logger.log(f"Skipped {result['skipped']} metadata entries in {zip_path}")
        if emit:
            emit(f"Skipped {result['skipped']} metadata entries")

    if profile.delete_archive:
        result["archive_deleted"] = delete_archive(zip_path, logger, emit)
    result["archive"] = zip_path
    return result


def _run_script_streaming(req: UploadRequest, emitter: LineEmitter, logger: AppLogger) -> None:
    try:
        run_task_stream(req.script, emitter.emit, cwd=req.target_dir)
    except RunError as e:
        emitter.error(f"Script execution failed: {e}")
        logger.log(f"Script execution failed: {e}", "ERR")
        return
    emitter.done("Script executed successfully.")


def run_streaming_pipeline(req: UploadRequest, profile: EndpointProfile, emitter: LineEmitter, logger: AppLogger) -> None:
    """Drive save -> extract -> delete -> run, reporting every step on `emitter`.

    Stops at the first failure with an ERR line; DONE is only written on success.
    The emitter is closed on return, which ends the response body.
    """
    try:
        if profile.accepts_file:
            emitter.info(profile.start_message or "Starting upload process")
            emitter.info(f"Uploading {req.file_name} to {req.target_dir}")
            try:
                save_and_extract(req, profile, logger, emitter.info)
            except (SaveError, ExtractError) as e:
                emitter.error(str(e))
                logger.log(f"save/extract error: {e}", "ERR")
                return
            if req.script:
                emitter.info(f"Running script: {req.script}")
                _run_script_streaming(req, emitter, logger)
            else:
                emitter.done("Upload and extract complete.")
        else:
            try:
                os.makedirs(req.target_dir, exist_ok=True)
            except OSError as e:
                emitter.error(f"Script execution failed: could not create working dir: {e}")
                logger.log(f"could not create working dir {req.target_dir}: {e}", "ERR")
                return
            emitter.info(f"Executing script in {req.target_dir}: {req.script}")
            _run_script_streaming(req, emitter, logger)
    except Exception as e:
        emitter.error(f"internal error: {e}")
        logger.log(f"{profile.name} pipeline crashed: {e}", "ERR")
    finally:
        if req.file is not None:
            req.file.file.close()
        emitter.close()


def start_streaming_pipeline(req: UploadRequest, profile: EndpointProfile, emitter: LineEmitter, logger: AppLogger) -> threading.Thread:
    t = threading.Thread(target=run_streaming_pipeline, args=(req, profile, emitter, logger), daemon=True)
    t.start()
    return t


def run_buffered_pipeline(req: UploadRequest, profile: EndpointProfile, logger: AppLogger) -> Tuple[int, str]:
    """Whole pipeline in the request; returns (status_code, body)."""
    try:
        save_and_extract(req, profile, logger)
    except SaveError as e:
        logger.log(f"save failed: {e}", "ERR")
        return 500, f"Error saving file: {e}"
    except ExtractError as e:
        logger.log(f"extract failed: {e}", "ERR")
        return 500, f"Error extracting file: {e}"
    finally:
        if req.file is not None:
            req.file.file.close()

    message = f"File uploaded and extracted to {req.target_dir}"
    if not req.script:
        return 200, message

    try:
        res = run_task(req.script, cwd=req.target_dir)
    except RunError as e:
        logger.log(f"Script execution failed: {e}", "ERR")
        return 500, f"Error running script: {e}\n{e.output}"
    return 200, f"{message}\nScript output:\n{res['output']}"
