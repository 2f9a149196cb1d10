"""
Repository Chunker
==================

Splits a repository into chunks that can be analyzed independently and in
parallel.

Strategies:
- time_based: windows over the commit history (e.g. 30 days, 7 days overlap)
- commit_count: fixed-size runs of commits with overlap
- size_based: groups of files up to a byte limit
- feature_based: one chunk per feature directory, split when too large

Configuration is read from ``.aidp-chunk-config.yml`` in the project root,
falling back to the defaults below per strategy.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
import os
import re
import subprocess

from aidp.config import ConfigError, load_yaml_config
from aidp.logger import AidpLogger, get_logger
from aidp.parallel.parallel_processor import ParallelProcessor

COMPONENT = "repository_chunker"

CHUNK_CONFIG_FILE = ".aidp-chunk-config.yml"

CHUNKING_STRATEGIES = ['time_based', 'commit_count', 'size_based', 'feature_based']

DEFAULT_CHUNK_CONFIG: Dict[str, Dict[str, Any]] = {
    'time_based': {'chunk_size': '30d', 'overlap': '7d'},
    'commit_count': {'chunk_size': 1000, 'overlap': 100},
    'size_based': {'chunk_size': '100MB', 'overlap': '10MB'},
    'feature_based': {'max_files_per_chunk': 500, 'max_commits_per_chunk': 500},
}

FEATURE_ROOTS = ['app/features', 'features', 'src/features', 'lib/features']

# directories never counted as repository content
IGNORED_DIRS = {'.git', '.aidp', '.worktrees'}

DAY = 24 * 60 * 60
_DURATION_UNITS = {'d': DAY, 'w': 7 * DAY, 'm': 30 * DAY, 'y': 365 * DAY}
_SIZE_UNITS = {'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}

DEFAULT_DURATION = 30 * DAY
DEFAULT_SIZE = 100 * 1024 ** 2

# seconds per file/commit
_ANALYSIS_DURATION = {
    'static_analysis': 30,
    'security_analysis': 60,
    'performance_analysis': 45,
}
_ANALYSIS_PRIORITY_FACTOR = {
    'security_analysis': 2,
    'performance_analysis': 1.5,
}
_ANALYSIS_CPU = {
    'static_analysis': 'medium',
    'security_analysis': 'high',
    'performance_analysis': 'high',
}


def parse_time_duration(value: Any) -> int:
    """Parse ``Nd``, ``Nw``, ``Nm`` or ``Ny`` into seconds (default 30 days)."""
    match = re.fullmatch(r"(\d{1,6})([dwmy])", str(value).strip())
    if not match:
        return DEFAULT_DURATION
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def parse_size(value: Any) -> int:
    """Parse ``NKB``, ``NMB`` or ``NGB`` (case-insensitive) into bytes (default 100MB)."""
    match = re.fullmatch(r"(\d{1,10})(KB|MB|GB)", str(value).strip(), re.IGNORECASE)
    if not match:
        return DEFAULT_SIZE
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]


def _item_count(chunk: Mapping[str, Any]) -> int:
    return len(chunk.get('files') or []) + len(chunk.get('commits') or [])


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[middle]
    return (ordered[middle - 1] + ordered[middle]) / 2.0


class RepositoryChunker:
    """Partitions a repository's history or files into analysis chunks."""

    def __init__(
        self,
        project_dir: Union[str, Path, None] = None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[AidpLogger] = None
    ):
        """
        Initialize repository chunker.

        Args:
            project_dir: Repository root (defaults to cwd)
            config: Per-strategy overrides applied on top of the config file
            logger: Logger handle (defaults to the process-wide logger)
        """
        self.project_dir = Path(project_dir or os.getcwd())
        self._logger = logger
        self.chunk_config = self._load_chunk_config(config or {})
        self._commit_cache: Optional[List[Dict[str, Any]]] = None

    @property
    def logger(self) -> AidpLogger:
        return self._logger or get_logger()

    # =========================================================================
    # Chunking
    # =========================================================================

    def chunk_repository(self, strategy: str = "time_based", options: Optional[Dict[str, Any]] = None):
        """
        Chunk the repository with the given strategy.

        Returns:
            ``{strategy, total_chunks, chunks, ...}`` or ``[]`` when there is
            nothing to chunk

        Raises:
            ValueError: For an unknown strategy
        """
        handlers: Dict[str, Callable] = {
            'time_based': self.chunk_by_time,
            'commit_count': self.chunk_by_commit_count,
            'size_based': self.chunk_by_size,
            'feature_based': self.chunk_by_features,
        }
        if strategy not in handlers:
            raise ValueError(f"Unknown chunking strategy: {strategy}")

        strategy_config = self.chunk_config.get(strategy) or DEFAULT_CHUNK_CONFIG[strategy]
        self.logger.debug(COMPONENT, "chunking_repository", strategy=strategy)
        return handlers[strategy](strategy_config, options or {})

    def chunk_by_time(self, config: Mapping[str, Any], options: Optional[Dict[str, Any]] = None):
        chunk_size = parse_time_duration(config.get('chunk_size'))
        overlap = parse_time_duration(config.get('overlap')) if config.get('overlap') else 0
        if overlap >= chunk_size:
            self.logger.warn(COMPONENT, "overlap_clamped", strategy="time_based", overlap=overlap,
                             chunk_size=chunk_size)
            overlap = 0

        time_range = self.get_repository_time_range()
        if not time_range:
            return []

        chunks = []
        current_start = time_range['start']
        end = time_range['end']

        while True:
            current_end = min(current_start + timedelta(seconds=chunk_size), end)
            chunks.append({
                'id': self._chunk_id("time", int(current_start.timestamp())),
                'strategy': 'time_based',
                'start_time': current_start,
                'end_time': current_end,
                'duration': (current_end - current_start).total_seconds(),
                'commits': [c['hash'] for c in self._commits_between(current_start, current_end)],
                'files': self._files_between(current_start, current_end),
                'overlap': overlap,
            })
            if current_end >= end:
                break
            current_start = current_end - timedelta(seconds=overlap)

        return {
            'strategy': 'time_based',
            'total_chunks': len(chunks),
            'chunks': chunks,
            'time_range': time_range,
            'config': dict(config),
        }

    def chunk_by_commit_count(self, config: Mapping[str, Any], options: Optional[Dict[str, Any]] = None):
        chunk_size = max(1, int(config.get('chunk_size') or 1000))
        overlap = int(config.get('overlap') or 0)
        if overlap >= chunk_size:
            self.logger.warn(COMPONENT, "overlap_clamped", strategy="commit_count", overlap=overlap,
                             chunk_size=chunk_size)
            overlap = chunk_size - 1

        commits = self._all_commits()
        if not commits:
            return []

        chunks = []
        total = len(commits)
        start_index = 0
        while True:
            end_index = min(start_index + chunk_size, total)
            chunk_commits = commits[start_index:end_index]
            chunks.append({
                'id': self._chunk_id("commit", start_index),
                'strategy': 'commit_count',
                'start_index': start_index,
                'end_index': end_index,
                'commit_count': len(chunk_commits),
                'commits': [c['hash'] for c in chunk_commits],
                'files': self._files_for(chunk_commits),
                'overlap': overlap,
            })
            if end_index >= total:
                break
            start_index += chunk_size - overlap

        return {
            'strategy': 'commit_count',
            'total_chunks': len(chunks),
            'chunks': chunks,
            'total_commits': total,
            'config': dict(config),
        }

    def chunk_by_size(self, config: Mapping[str, Any], options: Optional[Dict[str, Any]] = None):
        chunk_size = parse_size(config.get('chunk_size'))

        structure = self.analyze_repository_structure()
        if not structure:
            return []

        def new_chunk(number: int) -> Dict[str, Any]:
            return {'id': self._chunk_id("size", number), 'strategy': 'size_based',
                    'files': [], 'size': 0, 'directories': []}

        chunks: List[Dict[str, Any]] = []
        current = new_chunk(0)
        for item in structure:
            if current['files'] and current['size'] + item['size'] > chunk_size:
                chunks.append(current)
                current = new_chunk(len(chunks))

            current['files'].append(item['path'])
            current['size'] += item['size']
            directory = os.path.dirname(item['path']) or '.'
            if directory not in current['directories']:
                current['directories'].append(directory)

        if current['files']:
            chunks.append(current)

        return {
            'strategy': 'size_based',
            'total_chunks': len(chunks),
            'chunks': chunks,
            'total_size': sum(item['size'] for item in structure),
            'config': dict(config),
        }

    def chunk_by_features(self, config: Mapping[str, Any], options: Optional[Dict[str, Any]] = None):
        max_files = max(1, int(config.get('max_files_per_chunk') or 500))
        max_commits = max(1, int(config.get('max_commits_per_chunk') or 500))

        features = self.identify_features()
        if not features:
            return []

        chunks = []
        for feature in features:
            files = self._feature_files(feature)
            commits = self._feature_commits(feature)

            if len(files) > max_files or len(commits) > max_commits:
                chunks.extend(self._split_large_feature(feature, files, commits, max_files))
                continue

            chunks.append({
                'id': self._chunk_id("feature", feature['path']),
                'strategy': 'feature_based',
                'feature': feature,
                'files': files,
                'commits': commits,
                'file_count': len(files),
                'commit_count': len(commits),
            })

        return {
            'strategy': 'feature_based',
            'total_chunks': len(chunks),
            'chunks': chunks,
            'features': features,
            'config': dict(config),
        }

    # =========================================================================
    # Analysis
    # =========================================================================

    def get_chunk_analysis_plan(
        self,
        chunks: List[Dict[str, Any]],
        analysis_type: str,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Per-chunk duration, priority and resource estimates, highest priority first."""
        plan = {
            'analysis_type': analysis_type,
            'total_chunks': len(chunks),
            'chunks': [],
            'estimated_duration': 0,
            'dependencies': [],
        }

        for index, chunk in enumerate(chunks):
            chunk_plan = {
                'chunk_id': chunk.get('id'),
                'chunk_index': index,
                'strategy': chunk.get('strategy'),
                'estimated_duration': self.estimate_chunk_analysis_duration(chunk, analysis_type),
                'dependencies': [],
                'priority': self.calculate_chunk_priority(chunk, analysis_type),
                'resources': self.estimate_chunk_resources(chunk, analysis_type),
            }
            plan['chunks'].append(chunk_plan)
            plan['estimated_duration'] += chunk_plan['estimated_duration']

        plan['chunks'].sort(key=lambda entry: -entry['priority'])
        return plan

    def execute_chunk_analysis(
        self,
        chunk: Dict[str, Any],
        analysis_type: str,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Analyze one chunk.

        Suitable as a ParallelProcessor function via a small closure.

        Raises:
            ValueError: If the chunk's strategy is unknown
        """
        analyzers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            'time_based': self._analyze_time_chunk,
            'commit_count': self._analyze_commit_chunk,
            'size_based': self._analyze_size_chunk,
            'feature_based': self._analyze_feature_chunk,
        }
        strategy = chunk.get('strategy')
        if strategy not in analyzers:
            raise ValueError(f"Unknown chunk strategy: {strategy}")

        start_time = datetime.now()
        data = analyzers[strategy](chunk)
        end_time = datetime.now()

        return {
            'chunk_id': chunk.get('id'),
            'analysis_type': analysis_type,
            'start_time': start_time,
            'end_time': end_time,
            'duration': (end_time - start_time).total_seconds(),
            'status': 'completed',
            'data': data,
        }

    def analyze_chunks_parallel(
        self,
        chunks: List[Dict[str, Any]],
        analysis_type: str,
        processor=None,
        dependencies: Optional[Mapping[Any, List[Any]]] = None,
        options: Optional[Dict[str, Any]] = None
    ):
        """
        Run ``execute_chunk_analysis`` over chunks with a ParallelProcessor.

        Args:
            chunks: Chunks produced by one of the strategies
            analysis_type: Analysis name passed through to each chunk
            processor: ParallelProcessor to use (a default one is created)
            dependencies: Optional chunk dependency map (phased execution)
            options: Processor options

        Returns:
            The processor's aggregate (``[]`` for no chunks)
        """
        processor = processor or ParallelProcessor(logger=self._logger)

        def analyze(chunk: Dict[str, Any], chunk_options: Dict[str, Any]) -> Dict[str, Any]:
            return self.execute_chunk_analysis(chunk, analysis_type, chunk_options)

        self.logger.info(COMPONENT, "analyzing_chunks", total_chunks=len(chunks), analysis_type=analysis_type)
        if dependencies:
            return processor.process_chunks_with_dependencies(chunks, dependencies, analyze, options)
        return processor.process_chunks_parallel(chunks, analyze, options)

    def merge_chunk_results(
        self,
        chunk_results: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Combine completed chunk analyses; failed ones are listed under ``errors``."""
        completed = [r for r in chunk_results if r.get('status') == 'completed']
        failed = [r for r in chunk_results if r.get('status') == 'failed']

        merged: Dict[str, Any] = {
            'total_chunks': len(chunk_results),
            'successful_chunks': len(completed),
            'failed_chunks': len(failed),
            'total_duration': sum(r.get('duration') or 0 for r in chunk_results),
            'merged_data': {},
            'errors': [{'chunk_id': r.get('chunk_id'), 'error': r.get('error')} for r in failed],
        }

        for result in completed:
            for key, value in (result.get('data') or {}).items():
                existing = merged['merged_data'].get(key)
                if isinstance(existing, list) and isinstance(value, list):
                    existing.extend(value)
                elif isinstance(existing, dict) and isinstance(value, dict):
                    existing.update(value)
                else:
                    merged['merged_data'][key] = list(value) if isinstance(value, list) else value

        return merged

    def get_chunk_statistics(self, chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not chunks:
            return {}

        sizes = [_item_count(chunk) for chunk in chunks]
        stats: Dict[str, Any] = {
            'total_chunks': len(chunks),
            'strategies': dict(Counter(chunk.get('strategy') for chunk in chunks)),
            'total_files': sum(len(chunk.get('files') or []) for chunk in chunks),
            'total_commits': sum(len(chunk.get('commits') or []) for chunk in chunks),
            'average_chunk_size': sum(sizes) / len(sizes),
            'chunk_distribution': {
                'min': min(sizes),
                'max': max(sizes),
                'average': sum(sizes) / len(sizes),
                'median': _median(sizes),
            },
        }

        for strategy in dict.fromkeys(chunk.get('strategy') for chunk in chunks):
            strategy_chunks = [chunk for chunk in chunks if chunk.get('strategy') == strategy]
            strategy_sizes = [_item_count(chunk) for chunk in strategy_chunks]
            stats[f"{strategy}_stats"] = {
                'chunk_count': len(strategy_chunks),
                'total_files': sum(len(chunk.get('files') or []) for chunk in strategy_chunks),
                'total_commits': sum(len(chunk.get('commits') or []) for chunk in strategy_chunks),
                'average_size': sum(strategy_sizes) / len(strategy_sizes),
            }

        return stats

    # =========================================================================
    # Estimates
    # =========================================================================

    def estimate_chunk_analysis_duration(self, chunk: Mapping[str, Any], analysis_type: str) -> int:
        return _item_count(chunk) * _ANALYSIS_DURATION.get(analysis_type, 30)

    def calculate_chunk_priority(self, chunk: Mapping[str, Any], analysis_type: str) -> float:
        return _item_count(chunk) * _ANALYSIS_PRIORITY_FACTOR.get(analysis_type, 1)

    def estimate_chunk_resources(self, chunk: Mapping[str, Any], analysis_type: str) -> Dict[str, Any]:
        return {
            'memory': _item_count(chunk) * 1024 * 1024,
            'cpu': _ANALYSIS_CPU.get(analysis_type, 'low'),
            'disk': len(chunk.get('files') or []) * 1024 * 1024,
        }

    # =========================================================================
    # Repository inspection
    # =========================================================================

    def get_repository_time_range(self) -> Dict[str, datetime]:
        """First and last commit times, or an empty dict without history."""
        commits = self._all_commits()
        if not commits:
            return {}
        timestamps = [c['timestamp'] for c in commits]
        return {
            'start': datetime.fromtimestamp(min(timestamps), tz=timezone.utc),
            'end': datetime.fromtimestamp(max(timestamps), tz=timezone.utc),
        }

    def analyze_repository_structure(self) -> List[Dict[str, Any]]:
        """All files under the project (sorted), with sizes and extensions."""
        structure = []
        for root, dirs, files in os.walk(self.project_dir):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
            for name in sorted(files):
                path = Path(root) / name
                try:
                    size = path.stat().st_size
                except OSError:
                    continue
                relative = path.relative_to(self.project_dir).as_posix()
                structure.append({'path': relative, 'size': size, 'type': path.suffix})
        return structure

    def identify_features(self) -> List[Dict[str, Any]]:
        features = []
        for root in FEATURE_ROOTS:
            feature_root = self.project_dir / root
            if not feature_root.is_dir():
                continue
            for path in sorted(feature_root.iterdir()):
                if path.is_dir():
                    features.append({
                        'name': path.name,
                        'path': path.relative_to(self.project_dir).as_posix(),
                        'type': 'directory',
                    })
        return features

    def _feature_files(self, feature: Mapping[str, Any]) -> List[str]:
        feature_path = self.project_dir / feature['path']
        if not feature_path.is_dir():
            return []
        return sorted(
            path.relative_to(self.project_dir).as_posix()
            for path in feature_path.rglob('*') if path.is_file()
        )

    def _feature_commits(self, feature: Mapping[str, Any]) -> List[str]:
        prefix = feature['path'].rstrip('/') + '/'
        return [
            commit['hash'] for commit in self._all_commits()
            if any(name.startswith(prefix) for name in commit['files'])
        ]

    def _split_large_feature(
        self,
        feature: Mapping[str, Any],
        files: List[str],
        commits: List[str],
        max_files: int
    ) -> List[Dict[str, Any]]:
        chunks = []
        for start in range(0, max(len(files), 1), max_files):
            file_slice = files[start:start + max_files]
            chunks.append({
                'id': self._chunk_id("feature", f"{feature['path']}_files_{len(chunks)}"),
                'strategy': 'feature_based',
                'feature': dict(feature),
                'files': file_slice,
                'commits': commits,
                'file_count': len(file_slice),
                'commit_count': len(commits),
            })
        return chunks

    def _all_commits(self) -> List[Dict[str, Any]]:
        """Commits oldest first, each with ``hash``, ``timestamp`` and touched ``files``."""
        if self._commit_cache is not None:
            return self._commit_cache

        output = self._git(['log', '--reverse', '--name-only', '--format=@@%H %ct'])
        commits: List[Dict[str, Any]] = []
        for line in (output or "").splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith('@@'):
                commit_hash, _, timestamp = line[2:].partition(' ')
                commits.append({'hash': commit_hash, 'timestamp': int(timestamp or 0), 'files': []})
            elif commits:
                commits[-1]['files'].append(line)

        self._commit_cache = commits
        return commits

    def _commits_between(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        low, high = start.timestamp(), end.timestamp()
        return [c for c in self._all_commits() if low <= c['timestamp'] <= high]

    def _files_between(self, start: datetime, end: datetime) -> List[str]:
        return self._files_for(self._commits_between(start, end))

    @staticmethod
    def _files_for(commits: List[Dict[str, Any]]) -> List[str]:
        return list(dict.fromkeys(name for commit in commits for name in commit['files']))

    def _git(self, args: List[str]) -> Optional[str]:
        try:
            result = subprocess.run(
                ['git'] + args,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=60
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.debug(COMPONENT, "git_unavailable", error=str(e))
            return None

        if result.returncode != 0:
            self.logger.debug(COMPONENT, "git_command_failed", command=' '.join(args),
                              error=result.stderr.strip())
            return None
        return result.stdout

    def _load_chunk_config(self, overrides: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
        config = {strategy: dict(values) for strategy, values in DEFAULT_CHUNK_CONFIG.items()}

        try:
            file_config = load_yaml_config(self.project_dir / CHUNK_CONFIG_FILE)
        except ConfigError as e:
            self.logger.warn(COMPONENT, "invalid_chunk_config", error=str(e))
            file_config = {}

        for source in (file_config, overrides):
            for strategy, values in source.items():
                if isinstance(values, Mapping):
                    config.setdefault(strategy, {}).update(values)

        return config

    @staticmethod
    def _chunk_id(prefix: str, identifier: Any) -> str:
        return f"{prefix}_{identifier}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    # =========================================================================
    # Per-strategy analysis payloads
    # =========================================================================

    def _analyze_time_chunk(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'time_range': {'start': chunk.get('start_time'), 'end': chunk.get('end_time')},
            'commits': chunk.get('commits') or [],
            'files': chunk.get('files') or [],
            'analysis_results': {},
        }

    def _analyze_commit_chunk(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'commit_range': {'start': chunk.get('start_index'), 'end': chunk.get('end_index')},
            'commits': chunk.get('commits') or [],
            'files': chunk.get('files') or [],
            'analysis_results': {},
        }

    def _analyze_size_chunk(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'size': chunk.get('size', 0),
            'files': chunk.get('files') or [],
            'directories': chunk.get('directories') or [],
            'analysis_results': {},
        }

    def _analyze_feature_chunk(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'feature': chunk.get('feature'),
            'files': chunk.get('files') or [],
            'commits': chunk.get('commits') or [],
            'analysis_results': {},
        }
