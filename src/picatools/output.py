"""Writing finished documents to the output directory."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from lxml import etree

from .exceptions import FileOperationError
from .mycore import serialize_document

logger = logging.getLogger(__name__)


class DocumentWriter:
    """Write one ``<target_id>.xml`` file per document.

    Each file is written to a temporary name in the output directory and then
    moved into place, so a document is either complete or absent.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir
        self.written = 0
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileOperationError(f"Cannot create output directory {output_dir}: {e}") from e

    def path_for(self, target_id: str) -> Path:
        return self.output_dir / f"{target_id}.xml"

    def write(self, target_id: str, document: etree._ElementTree) -> Path:
        """Serialize and write ``document``.

        Raises:
            FileOperationError: If the file cannot be written
        """
        output_path = self.path_for(target_id)
        data = serialize_document(document)

        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="wb", dir=self.output_dir, prefix=f".{target_id}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(data)
            os.replace(tmp_name, output_path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise FileOperationError(f"Failed to write {output_path}: {e}") from e

        self.written += 1
        logger.debug(f"Wrote {output_path}")
        return output_path
