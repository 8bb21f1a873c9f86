"""
Rendering engine wrapper: LibreOffice headless PDF export

The engine is an opaque executable. It is driven through its command line,
with HOME redirected into the invocation's scratch area so that concurrent
invocations never share a user profile. Exit status alone is not trusted:
the expected PDF must exist and open as a non-empty PDF.
"""

import logging
from abc import ABC, abstractmethod
import os
import shutil
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import fitz  # PyMuPDF

from pipeline_errors import ConversionError

logger = logging.getLogger(__name__)

SOFFICE_CANDIDATES = ('libreoffice', 'soffice')
SOFFICE_FLAGS = [
    '--headless', '--invisible',
    '--nodefault', '--nofirststartwizard',
    '--nolockcheck', '--nologo', '--norestore',
]
TARGET_FORMAT = 'pdf'
STDERR_EXCERPT_CHARS = 500


class Renderer(ABC):
    """Capability interface for turning a presentation file into a PDF"""

    @abstractmethod
    def convert(self, input_path: Path, output_dir: Path, timeout: Optional[float] = None,
                home_dir: Optional[Path] = None) -> Path:
        """
        Convert input_path into a PDF inside output_dir

        Returns:
            Path of the produced PDF

        Raises:
            ConversionError: on any engine failure or missing output
        """
        raise NotImplementedError


def find_soffice(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    explicit = environ.get('SOFFICE_BIN')
    if explicit:
        resolved = shutil.which(explicit)
        if resolved:
            return resolved
        raise ConversionError(f"SOFFICE_BIN is set but not executable: {explicit}")

    for name in SOFFICE_CANDIDATES:
        resolved = shutil.which(name)
        if resolved:
            return resolved
    raise ConversionError("LibreOffice not found on PATH and SOFFICE_BIN not set")


def count_pdf_pages(pdf_path: Path) -> int:
    """Open the file with PyMuPDF and return its page count"""
    try:
        with fitz.open(str(pdf_path)) as doc:
            if not doc.is_pdf:
                raise ConversionError(f"Output is not a PDF: {pdf_path.name}")
            return doc.page_count
    except RuntimeError as e:
        # FileDataError / EmptyFileError
        raise ConversionError(f"Output PDF is unreadable: {e}") from e


class LibreOfficeRenderer(Renderer):

    def __init__(self, binary: Optional[str] = None):
        self._binary = binary

    @property
    def binary(self) -> str:
        if self._binary is None:
            self._binary = find_soffice()
        return self._binary

    def build_command(self, input_path: Path, output_dir: Path) -> List[str]:
        return [
            self.binary,
            *SOFFICE_FLAGS,
            '--convert-to', TARGET_FORMAT,
            '--outdir', str(output_dir),
            str(input_path),
        ]

    @staticmethod
    def build_env(home_dir: Path) -> Dict[str, str]:
        env = dict(os.environ)
        env['HOME'] = str(home_dir)
        return env

    @staticmethod
    def expected_output(input_path: Path, output_dir: Path) -> Path:
        return output_dir / f"{input_path.stem}.{TARGET_FORMAT}"

    def convert(self, input_path: Path, output_dir: Path, timeout: Optional[float] = None,
                home_dir: Optional[Path] = None) -> Path:
        input_path = Path(input_path)
        output_dir = Path(output_dir)
        home_dir = Path(home_dir) if home_dir else output_dir / 'home'
        home_dir.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(input_path, output_dir)
        logger.info("Executing command: %s", ' '.join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.build_env(home_dir),
                start_new_session=True,
            )
        except OSError as e:
            raise ConversionError(f"LibreOffice failed to start: {e}") from e

        try:
            _, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                # group already exited
                pass
            proc.communicate()
            raise ConversionError(f"LibreOffice timed out after {timeout:.0f}s") from e

        if proc.returncode != 0:
            excerpt = (stderr or b'').decode(errors='ignore')[:STDERR_EXCERPT_CHARS]
            raise ConversionError(f"LibreOffice returned {proc.returncode}: {excerpt}")

        pdf_path = self.expected_output(input_path, output_dir)
        if not pdf_path.exists():
            raise ConversionError("LibreOffice reported success but PDF was not generated")

        pages = count_pdf_pages(pdf_path)
        if pages < 1:
            raise ConversionError("LibreOffice produced a PDF with no pages")

        logger.info("Conversion completed: %s (%d pages)", pdf_path.name, pages)
        return pdf_path
