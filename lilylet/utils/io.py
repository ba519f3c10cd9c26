import os
import logging

logger = logging.getLogger(__name__)


def save_text_file(content: str, output_path: str):
    """
    Saves string content to a UTF-8 text file, creating parent directories.

    Raises:
        IOError: If the file cannot be written to the specified path.
    """
    try:
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(content)
        logger.info(f"Saved {output_path}")

    except IOError:
        logger.error(f"Error: Could not write to file at {output_path}")
        raise


def read_text_file(file_path: str) -> str:
    """
    Reads a whole text file. A UTF-8 byte order mark is dropped.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    try:
        with open(file_path, 'r', encoding='utf-8-sig') as f:
            return f.read()
    except FileNotFoundError:
        logger.error(f"Error: File not found at {file_path}")
        raise
