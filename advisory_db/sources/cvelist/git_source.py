"""
Corpus source for the CVE list repository

BaseCorpusSource is the boundary the pipeline needs from wherever raw records live:
revision pointers, a file-level diff, a file listing and record reads.
GitCorpusSource drives the git CLI as a subprocess against a sparse local checkout.
"""

import abc
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from ..base.exceptions import MalformedRecord, SourceUnavailable

logger = logging.getLogger(__name__)


class BaseCorpusSource(abc.ABC):
    """Abstract interface to the versioned raw-record corpus"""

    @abc.abstractmethod
    async def materialize_subtree(self, remote_location: str, subtree_path: str) -> str:
        """Bring the local copy of `subtree_path` up to date, return the local revision"""

    @abc.abstractmethod
    async def current_revision(self) -> str:
        pass

    @abc.abstractmethod
    async def diff(self, from_revision: str, to_revision: str) -> List[str]:
        """Relative paths whose content differs between two revisions"""

    @abc.abstractmethod
    async def list_files(self) -> List[str]:
        """Every relative path tracked at the current revision"""

    @abc.abstractmethod
    async def read_record(self, location: str) -> Dict[str, Any]:
        pass

    async def has_revision(self, revision: str) -> bool:
        return True


class GitCorpusSource(BaseCorpusSource):
    """Corpus source backed by a sparse git checkout"""

    def __init__(self, local_path: str, branch: str = 'main', source_name: str = 'cvelist'):
        self.local_path = Path(local_path)
        self.branch = branch
        self.source_name = source_name

    async def _git(self, *args: str, check: bool = True) -> str:
        command = f"git {' '.join(args)}"
        logger.debug(f"Executing: {command}")
        try:
            process = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(self.local_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise SourceUnavailable(f"Cannot run git: {e}", self.source_name, command=command) from e

        if check and process.returncode != 0:
            logger.error(f"{command} failed with return code {process.returncode}")
            if stderr:
                logger.error(f"Error output: {stderr.decode(errors='replace').strip()}")
            raise SourceUnavailable(f"{command} failed", self.source_name,
                                    command=command, returncode=process.returncode)
        return stdout.decode(errors='replace')

    async def materialize_subtree(self, remote_location, subtree_path):
        self.local_path.mkdir(parents=True, exist_ok=True)
        subtree = subtree_path.strip('/')

        if not (self.local_path / '.git').exists():
            logger.info(f"Cloning target folder {subtree or '/'} from {remote_location}")
            await self._git('init')
            await self._git('remote', 'add', 'origin', remote_location)
            await self._git('config', 'core.sparseCheckout', 'true')
            sparse_file = self.local_path / '.git' / 'info' / 'sparse-checkout'
            sparse_file.parent.mkdir(parents=True, exist_ok=True)
            sparse_file.write_text(f"{subtree}/*\n" if subtree else "/*\n")
            await self._git('fetch', '--depth=1', 'origin', self.branch)
            await self._git('checkout', '-B', self.branch, f"origin/{self.branch}")
        else:
            logger.info("Repository already exists, pulling latest changes...")
            await self._git('pull', '--ff-only', 'origin', self.branch)

        revision = await self.current_revision()
        logger.info(f"Corpus at revision {revision[:7]}")
        return revision

    async def current_revision(self):
        return (await self._git('rev-parse', 'HEAD')).strip()

    async def has_revision(self, revision):
        output = await self._git('cat-file', '-t', revision, check=False)
        return output.strip() == 'commit'

    async def diff(self, from_revision, to_revision):
        # Deleted paths carry no content to ingest
        output = await self._git('diff', '--name-only', '--diff-filter=ACMR',
                                 f"{from_revision}..{to_revision}")
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def list_files(self):
        output = await self._git('ls-files')
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def read_record(self, location):
        path = self.local_path / location
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise MalformedRecord(f"Record file not found: {location}", self.source_name,
                                  source_locator=location) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedRecord(f"Record is not valid JSON: {e}", self.source_name,
                                  source_locator=location) from e
