"""Run scoping: the ancestor-closed subgraph needed to (re-)produce some nodes."""

from nodestudio.errors import CycleError
from nodestudio.graph.project import Graph


def find_cycle(graph: Graph) -> list[str] | None:
    """
    Return one dependency cycle as a node-id path (first id repeated at the end),
    or None when the graph is acyclic.

    Iterative DFS over outgoing edges with white/grey/black colouring; a grey
    node reached again is on the current path.
    """
    successors: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        successors.setdefault(edge.from_node_id, []).append(edge.to_node_id)

    WHITE, GREY, BLACK = 0, 1, 2
    color = dict.fromkeys(successors, WHITE)

    for root in successors:
        if color[root] != WHITE:
            continue
        path = [root]
        stack = [iter(successors[root])]
        color[root] = GREY
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            state = color.get(child, WHITE)
            if state == GREY:
                return path[path.index(child) :] + [child]
            if state == WHITE:
                color[child] = GREY
                path.append(child)
                stack.append(iter(successors.get(child, [])))
    return None


def scope_for_run(graph: Graph, start_node_ids: list[str] | None = None) -> Graph:
    """
    Compute the graph a run should execute.

    With no start nodes the whole graph is returned unchanged (as a copy).
    With start nodes, the scope is every start node plus all of its
    transitive ancestors, and every edge whose endpoints are both in scope.
    Sibling and downstream nodes that do not feed a start node are left out.

    A cyclic graph is rejected with CycleError regardless of the start nodes.
    """
    cycle = find_cycle(graph)
    if cycle is not None:
        raise CycleError(cycle)

    if not start_node_ids:
        return graph.model_copy(deep=True)

    for node_id in start_node_ids:
        graph.require_node(node_id)

    incoming: dict[str, list[str]] = {}
    for edge in graph.edges:
        incoming.setdefault(edge.to_node_id, []).append(edge.from_node_id)

    visited: set[str] = set()
    stack = list(start_node_ids)
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        stack.extend(incoming.get(node_id, []))

    nodes = [n.model_copy(deep=True) for n in graph.nodes if n.id in visited]
    edges = [e.model_copy(deep=True) for e in graph.edges if e.from_node_id in visited and e.to_node_id in visited]
    groups = []
    for group in graph.groups:
        members = [i for i in group.node_ids if i in visited]
        if members:
            groups.append(group.model_copy(update={"node_ids": members}, deep=True))
    # Graph's validator recomputes entry_node_ids for the subgraph
    return Graph(nodes=nodes, edges=edges, groups=groups)
