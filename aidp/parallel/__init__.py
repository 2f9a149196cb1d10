"""
Parallel Processing Module
==========================

Infrastructure for analyzing repository chunks concurrently.

Main Components:
- DependencyResolver: Orders chunks into execution phases
- ParallelProcessor: Runs a function over chunks on a bounded thread pool
- RepositoryChunker: Splits a repository into chunks
- ResourceMonitor: Memory / CPU / disk gauges

Usage:
    from aidp.parallel import ParallelProcessor, RepositoryChunker

    chunker = RepositoryChunker(project_dir)
    plan = chunker.chunk_repository("commit_count")
    aggregate = chunker.analyze_chunks_parallel(plan["chunks"], "static_analysis")
"""

from aidp.parallel.dependency_resolver import CircularDependencyError, DependencyResolver, ExecutionPlan
from aidp.parallel.parallel_processor import BatchContext, ParallelProcessor, calculate_statistics
from aidp.parallel.repository_chunker import RepositoryChunker
from aidp.parallel.resource_monitor import ResourceMonitor

__all__ = [
    'BatchContext',
    'CircularDependencyError',
    'DependencyResolver',
    'ExecutionPlan',
    'ParallelProcessor',
    'RepositoryChunker',
    'ResourceMonitor',
    'calculate_statistics',
]
