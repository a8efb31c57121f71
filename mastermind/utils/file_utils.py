"""
File Utilities Module

Common file operations for mastermind: JSON/YAML reads and atomic writes.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class FileUtils:
    """
    File operation utilities with error handling and validation.
    """

    @staticmethod
    def read_json(file_path: Path, strict: bool = False) -> Optional[Any]:
        """
        Read a JSON file.

        Args:
            file_path: Path to JSON file
            strict: Raise on unreadable or malformed content instead of
                logging and returning None

        Returns:
            Parsed JSON data, or None if the file does not exist
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            if strict:
                raise
            logger.debug(f"Could not read JSON from {file_path}: {e}")
            return None

    @staticmethod
    def read_yaml(file_path: Path) -> Optional[Any]:
        """
        Read a YAML file.

        Returns:
            Parsed YAML data ({} for an empty file), or None if the file does
            not exist. Malformed YAML raises yaml.YAMLError.
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return None
        return {} if data is None else data

    @staticmethod
    def write_text_atomic(file_path: Path, content: str, mode: int = 0o644) -> None:
        """
        Write text so readers only ever see the old or the new content.

        The content goes to a sibling temp file which is fsynced and then
        renamed over the target.
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = file_path.with_name(file_path.name + '.tmp')
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, file_path)
        except OSError:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise

    @staticmethod
    def write_json_atomic(file_path: Path, data: Any, indent: int = 2) -> None:
        """Serialize data as JSON and write it atomically."""
        FileUtils.write_text_atomic(file_path, json.dumps(data, indent=indent, ensure_ascii=False) + '\n')

    @staticmethod
    def remove_file(file_path: Path) -> bool:
        """Remove a file, returning False if it did not exist."""
        try:
            Path(file_path).unlink()
            return True
        except FileNotFoundError:
            return False
