"""
Test DependencyResolver implementation
"""

import pytest

from aidp.parallel.dependency_resolver import CircularDependencyError, DependencyResolver, ExecutionPlan


def chunks_for(*ids):
    return [{'id': cid, 'data': f"payload-{cid}"} for cid in ids]


def test_no_dependencies_single_phase():
    """All chunks run together when nothing depends on anything"""
    print("\n=== Test 1: Single Phase (no dependencies) ===")

    plan = DependencyResolver().resolve(chunks_for('c1', 'c2', 'c3'))

    print(f"Phases: {plan.phase_ids}")
    assert plan.phase_ids == [['c1', 'c2', 'c3']]
    assert plan.execution_order == ['c1', 'c2', 'c3']
    print("[PASS]")


def test_linear_dependencies():
    """Linear chain: c1 -> c2 -> c3"""
    print("\n=== Test 2: Linear Dependencies (c1 -> c2 -> c3) ===")

    plan = DependencyResolver().resolve(
        chunks_for('c3', 'c2', 'c1'),
        {'c2': ['c1'], 'c3': ['c2']}
    )

    print(f"Phases: {plan.phase_ids}")
    assert plan.phase_ids == [['c1'], ['c2'], ['c3']]
    assert plan.execution_order == ['c1', 'c2', 'c3']
    print("[PASS]")


def test_diamond_dependencies():
    """Diamond: a -> {b, c} -> d"""
    print("\n=== Test 3: Diamond ===")

    plan = DependencyResolver().resolve(
        chunks_for('a', 'b', 'c', 'd'),
        {'b': ['a'], 'c': ['a'], 'd': ['b', 'c']}
    )

    assert plan.phase_ids == [['a'], ['b', 'c'], ['d']]
    print("[PASS]")


def test_phases_keep_input_order():
    plan = DependencyResolver().resolve(
        chunks_for('z', 'root', 'y', 'x'),
        {'z': ['root'], 'y': ['root'], 'x': ['root']}
    )

    assert plan.phase_ids == [['root'], ['z', 'y', 'x']]


def test_phases_carry_chunk_payloads():
    chunks = chunks_for('c1', 'c2')
    plan = DependencyResolver().resolve(chunks, {'c2': ['c1']})

    assert plan.phases[0][0] is chunks[0]
    assert plan.phases[1][0]['data'] == "payload-c2"


def test_circular_dependency_raises():
    """Cycle c1 -> c2 -> c1 is rejected"""
    print("\n=== Test 4: Circular Dependency ===")

    with pytest.raises(CircularDependencyError, match="Circular dependency detected in chunks") as exc_info:
        DependencyResolver().resolve(chunks_for('c1', 'c2', 'c3'), {'c1': ['c2'], 'c2': ['c1']})

    assert set(exc_info.value.chunk_ids) == {'c1', 'c2'}
    assert exc_info.value.cycles
    assert isinstance(exc_info.value, RuntimeError)
    print(f"[PASS] {exc_info.value}")


def test_self_dependency_raises():
    with pytest.raises(CircularDependencyError):
        DependencyResolver().resolve(chunks_for('solo'), {'solo': ['solo']})


def test_unknown_prerequisites_are_ignored():
    """Dependencies on chunks that do not exist never block"""
    print("\n=== Test 5: Missing Dependencies ===")

    plan = DependencyResolver().resolve(chunks_for('c1', 'c2'), {'c2': ['c1', 'ghost']})

    assert plan.phase_ids == [['c1'], ['c2']]
    assert plan.missing_deps == {'c2': ['ghost']}
    print("[PASS]")


def test_empty_input():
    plan = DependencyResolver().resolve([], {'c1': ['c2']})

    assert isinstance(plan, ExecutionPlan)
    assert plan.phases == []
    assert plan.execution_order == []


def test_chunks_without_id_use_position():
    plan = DependencyResolver().resolve([{'data': 'a'}, {'data': 'b'}], {1: [0]})
    assert plan.execution_order == [0, 1]
    assert [[chunk['data'] for chunk in phase] for phase in plan.phases] == [['a'], ['b']]


@pytest.mark.parametrize("chunks", [
    [{'id': 'a', 'data': 'first'}, {'id': 'a', 'data': 'second'}],
    [{'id': 1, 'data': 'x'}, {'data': 'y'}],
])
def test_duplicate_ids_raise(chunks):
    """Two chunks resolving to one id are rejected"""
    print("\n=== Test 6: Duplicate Chunk Ids ===")

    with pytest.raises(ValueError, match="Duplicate chunk id"):
        DependencyResolver().resolve(chunks)
    print("[PASS]")


def test_phase_indices_track_input_positions():
    plan = DependencyResolver().resolve(chunks_for('c3', 'c1', 'c2'), {'c2': ['c1'], 'c3': ['c2']})

    assert plan.phase_indices == [[1], [2], [0]]
