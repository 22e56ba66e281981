"""
Fetch input files once and reuse local copies
"""

import os
import uuid
from pathlib import Path
from typing import Dict, List, Sequence, Union

import requests
from tqdm import tqdm

DEFAULT_CHUNK_SIZE = 1 << 16
DEFAULT_TIMEOUT = 60


def resolve_url(base_url: str, filename: str) -> str:
    """Join a base URL and a file name with exactly one slash."""
    return f"{base_url.rstrip('/')}/{filename.lstrip('/')}"


def fetch_file(url: str,
               dest: Union[str, Path],
               overwrite: bool = False,
               chunk_size: int = DEFAULT_CHUNK_SIZE,
               timeout: float = DEFAULT_TIMEOUT,
               verbose: bool = True) -> Path:
    """Download ``url`` to ``dest`` unless ``dest`` already exists

    The body is streamed to a temporary file next to ``dest`` and renamed into
    place, so an interrupted download never leaves a partial file behind.

    Args:
        url: Remote location
        dest: Local file path
        overwrite: Download even if ``dest`` exists
        chunk_size: Streaming chunk size in bytes
        timeout: Request timeout in seconds
        verbose: Print progress information

    Returns:
        Path to the local file
    """
    dest = Path(dest)
    if dest.exists() and not overwrite:
        if verbose:
            print(f"   Using existing {dest}")
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(f"{dest.name}.tmp-{uuid.uuid4().hex}")

    if verbose:
        print(f"   Downloading {url}")
    response = requests.get(url, stream=True, timeout=timeout)
    try:
        response.raise_for_status()
        total = int(response.headers.get('content-length', 0)) or None
        with open(tmp_path, 'wb') as fh, tqdm(total=total, unit='B', unit_scale=True,
                                              desc=dest.name, disable=not verbose) as bar:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if chunk:
                    fh.write(chunk)
                    bar.update(len(chunk))
        os.replace(tmp_path, dest)
    finally:
        response.close()
        if tmp_path.exists():
            tmp_path.unlink()

    return dest


def fetch_study_files(base_url: str,
                      filenames: Sequence[str],
                      dest_dir: Union[str, Path],
                      overwrite: bool = False,
                      verbose: bool = True) -> List[Path]:
    """Fetch several files sharing one base URL into ``dest_dir``, one at a time."""
    dest_dir = Path(dest_dir)
    return [
        fetch_file(resolve_url(base_url, name), dest_dir / Path(name).name,
                   overwrite=overwrite, verbose=verbose)
        for name in filenames
    ]


def missing_files(paths: Sequence[Union[str, Path]]) -> Dict[str, bool]:
    """Map each path to whether it is absent locally."""
    return {str(p): not Path(p).exists() for p in paths}
