# CVE list corpus: git source and change set resolution
from .change_set_resolver import ChangeSetResolver
from .git_source import BaseCorpusSource, GitCorpusSource
