"""
Lambda: Presentation to PDF Converter

Triggered by S3 object-created notifications (directly or via EventBridge).
- Filters the event: only .ppt/.pptx keys inside the input scope are converted
- Streams the source object into a per-invocation scratch directory
- Converts it with headless LibreOffice
- Uploads the PDF next to the source (or under OUTPUT_PREFIX)
- Removes scratch files on every exit path and returns a structured result
"""

import json
import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

# Add shared modules to path
sys.path.insert(0, '/opt/python')  # Lambda layer path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../shared'))

from pipeline_errors import (
    CleanupWarning,
    ConversionError,
    FetchError,
    InputError,
    PipelineError,
    PublishError,
)
from renderer import LibreOfficeRenderer, Renderer
from routing import ConversionRequest, RoutingPolicy, evaluate, extension_of

logger = logging.getLogger(__name__)
logging.getLogger().setLevel(os.environ.get('LOG_LEVEL', 'INFO'))

# Initialize clients
s3_client = boto3.client('s3')
renderer: Renderer = LibreOfficeRenderer()

# Environment variables
POLICY = RoutingPolicy.from_env()
SCRATCH_DIR = os.environ.get('SCRATCH_DIR') or tempfile.gettempdir()
DEADLINE_MARGIN_SECONDS = float(os.environ.get('DEADLINE_MARGIN_SECONDS', '10'))

PDF_CONTENT_TYPE = 'application/pdf'
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
MIN_RENDER_SECONDS = 1.0

STATUS_OK = 'ok'
STATUS_SKIPPED = 'skipped'
STATUS_ERROR = 'error'

logger.info("Lambda initialized - INPUT_PREFIX: %r, OUTPUT_PREFIX: %r",
            POLICY.input_prefix, POLICY.output_prefix)


@dataclass
class ScratchArtifact:
    """Invocation-local files. Removed by cleanup_scratch."""

    directory: Path
    input_path: Path
    output_path: Path
    profile_dir: Path


def handler(event, context):
    """
    Main handler for the converter Lambda

    Args:
        event: S3 notification, single S3 record, or EventBridge "Object Created" event
        context: Lambda context (its remaining time bounds the LibreOffice run)

    Returns:
        Dict with statusCode, status (ok | skipped | error), keys and message
    """
    logger.info("Event: %s", json.dumps(event, default=str))

    try:
        decision = evaluate(event, POLICY)
    except InputError as e:
        logger.error("Rejected event: %s", e)
        return build_result(STATUS_ERROR, str(e), error=e)
    except Exception as e:
        logger.exception("Unexpected error while filtering event")
        return build_result(STATUS_ERROR, f"{type(e).__name__}: {e}", error=e)

    request = decision.request
    if not decision.eligible:
        logger.info("Skipping s3://%s/%s (%s event): %s",
                    request.source_bucket, request.source_key, decision.source_shape, decision.reason)
        return build_result(STATUS_SKIPPED, decision.reason, request=request)

    logger.info("Processing file: %s from bucket: %s -> %s (%s event)",
                request.source_key, request.source_bucket, decision.output_key, decision.source_shape)

    scratch = None
    try:
        scratch = create_scratch(request.source_key)
        fetch_source(request, scratch)
        scratch.output_path = convert_presentation(scratch, context)
        publish_pdf(request.source_bucket, decision.output_key, scratch.output_path)
        result = build_result(STATUS_OK, 'PDF conversion successful',
                              request=request, output_key=decision.output_key)
    except PipelineError as e:
        logger.error("Stage '%s' failed for s3://%s/%s: %s",
                     e.stage, request.source_bucket, request.source_key, e)
        result = build_result(STATUS_ERROR, str(e), request=request, error=e)
    except Exception as e:
        logger.exception("Unexpected error processing s3://%s/%s", request.source_bucket, request.source_key)
        result = build_result(STATUS_ERROR, f"{type(e).__name__}: {e}", request=request, error=e)
    finally:
        cleanup_warnings = cleanup_scratch(scratch) if scratch is not None else []

    if cleanup_warnings:
        result['cleanupWarnings'] = [str(w) for w in cleanup_warnings]
    return result


def create_scratch(source_key: str) -> ScratchArtifact:
    """
    Create a private scratch directory for one invocation

    The input file keeps the source extension because LibreOffice picks its
    import filter from it.
    """
    try:
        directory = Path(tempfile.mkdtemp(prefix='pptx2pdf-', dir=SCRATCH_DIR))
    except OSError as e:
        raise FetchError(f"Could not create scratch directory in {SCRATCH_DIR}: {e}") from e

    input_path = directory / f"input{extension_of(source_key)}"
    return ScratchArtifact(
        directory=directory,
        input_path=input_path,
        output_path=LibreOfficeRenderer.expected_output(input_path, directory),
        profile_dir=directory / 'profile',
    )


def fetch_source(request: ConversionRequest, scratch: ScratchArtifact) -> int:
    """
    Stream the source object into the scratch input file

    Returns:
        Number of bytes written
    """
    uri = f"s3://{request.source_bucket}/{request.source_key}"
    logger.info("Downloading %s", uri)

    try:
        response = s3_client.get_object(Bucket=request.source_bucket, Key=request.source_key)
    except ClientError as e:
        code = e.response.get('Error', {}).get('Code', '')
        if code in ('NoSuchKey', 'NotFound', '404'):
            raise FetchError(f"Object not found: {uri}") from e
        raise FetchError(f"Failed to get {uri}: {e}") from e
    except BotoCoreError as e:
        raise FetchError(f"Failed to get {uri}: {e}") from e

    body = response['Body']
    written = 0
    try:
        with open(scratch.input_path, 'wb') as f:
            for chunk in body.iter_chunks(chunk_size=DOWNLOAD_CHUNK_BYTES):
                f.write(chunk)
                written += len(chunk)
    except (BotoCoreError, OSError) as e:
        raise FetchError(f"Transfer of {uri} interrupted after {written} bytes: {e}") from e
    finally:
        body.close()

    logger.info("File downloaded successfully (%d bytes)", written)
    return written


def render_timeout(context) -> Optional[float]:
    """Seconds left for LibreOffice, from the Lambda deadline. None without a context."""
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if get_remaining is None:
        return None
    return max(get_remaining() / 1000.0 - DEADLINE_MARGIN_SECONDS, MIN_RENDER_SECONDS)


def convert_presentation(scratch: ScratchArtifact, context=None) -> Path:
    """
    Run the renderer on the scratch input and verify the PDF is on disk

    Returns:
        Path of the produced PDF
    """
    logger.info("Converting to PDF...")
    try:
        pdf_path = renderer.convert(
            scratch.input_path,
            scratch.directory,
            timeout=render_timeout(context),
            home_dir=scratch.profile_dir,
        )
    except ConversionError:
        raise
    except OSError as e:
        raise ConversionError(f"PDF conversion failed: {e}") from e

    # Exit status alone is not trusted
    if pdf_path is None or not Path(pdf_path).is_file():
        raise ConversionError("PDF file was not generated")
    return Path(pdf_path)


def publish_pdf(bucket: str, output_key: str, pdf_path: Path) -> int:
    """
    Upload the converted PDF

    Returns:
        Size of the uploaded object in bytes
    """
    try:
        pdf_bytes = Path(pdf_path).read_bytes()
    except OSError as e:
        raise PublishError(f"Could not read converted PDF {pdf_path}: {e}") from e

    logger.info("Uploading PDF to s3://%s/%s", bucket, output_key)
    try:
        s3_client.put_object(
            Bucket=bucket,
            Key=output_key,
            Body=pdf_bytes,
            ContentType=PDF_CONTENT_TYPE,
        )
    except (ClientError, BotoCoreError) as e:
        raise PublishError(f"Failed to upload s3://{bucket}/{output_key}: {e}") from e

    logger.info("PDF uploaded successfully (%d bytes)", len(pdf_bytes))
    return len(pdf_bytes)


def cleanup_scratch(scratch: ScratchArtifact) -> List[CleanupWarning]:
    """
    Best-effort removal of the scratch files and directory

    Returns:
        One CleanupWarning per path that could not be removed
    """
    warnings = []
    for path in (scratch.input_path, scratch.output_path):
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            warnings.append(CleanupWarning(f"Could not remove {path}: {e}"))

    try:
        if scratch.directory.exists():
            shutil.rmtree(scratch.directory)
    except OSError as e:
        warnings.append(CleanupWarning(f"Could not remove {scratch.directory}: {e}"))

    for warning in warnings:
        logger.warning("Cleanup warning: %s", warning)
    return warnings


def build_result(status: str, message: str, request: Optional[ConversionRequest] = None,
                 output_key: Optional[str] = None, error: Optional[BaseException] = None) -> Dict[str, Any]:
    """Assemble the response returned to the trigger"""
    if status == STATUS_ERROR:
        status_code = 400 if isinstance(error, InputError) else 500
    else:
        status_code = 200

    result = {
        'statusCode': status_code,
        'status': status,
        'message': message,
    }
    if request is not None:
        result['bucket'] = request.source_bucket
        result['inputKey'] = request.source_key
    if output_key is not None:
        result['outputKey'] = output_key
    if error is not None:
        result['stage'] = getattr(error, 'stage', 'unknown')
        result['error'] = type(error).__name__
    return result
