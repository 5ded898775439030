"""Rooted level-1 phylogenetic networks, extended Newick I/O and simplification."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from pathlib import Path
import re
from typing import Dict, Iterable, List, Sequence, Tuple

import networkx as nx

Taxon = str
EdgeRef = Tuple[int, int, int]  # (parent node, child node, edge number)

_HYBRID_LABEL = re.compile(r"^(?P<prefix>[^#]*)#(?P<name>[^#]+)$")


class PhyloNetwork:
    """Rooted phylogenetic network stored as a ``networkx.MultiDiGraph``.

    Nodes are integers and edges are keyed by integer edge numbers. Both stay
    stable across :meth:`copy` and every simplification below, so an edge of a
    working copy can be looked up by the number it had in the original.
    A node is a hybrid if it has 2 or more parent edges, and a leaf if it has
    no child edge. Edge attributes: ``length`` (coalescent units, or None if
    missing) and ``gamma`` (inheritance probability, only read for hybrid edges).
    Parallel edges are allowed: they form 2-cycles.
    """

    def __init__(self, graph: nx.MultiDiGraph | None = None, root: int | None = None):
        self.graph = nx.MultiDiGraph() if graph is None else graph
        self.root = root
        self._edge_index: Dict[int, Tuple[int, int]] = {
            key: (u, v) for u, v, key in self.graph.edges(keys=True)
        }
        self._next_node = max(self.graph.nodes, default=-1) + 1
        self._next_edge = max(self._edge_index, default=-1) + 1

    def __repr__(self) -> str:
        return (
            f"PhyloNetwork({self.graph.number_of_nodes()} nodes, "
            f"{self.graph.number_of_edges()} edges, {self.num_hybrids} hybrids)"
        )

    # construction

    def add_node(self, taxon: Taxon | None = None, name: str | None = None) -> int:
        node = self._next_node
        self._next_node += 1
        self.graph.add_node(node, taxon=taxon, name=name)
        return node

    def add_edge(
        self,
        parent: int,
        child: int,
        length: float | None = None,
        gamma: float | None = None,
        key: int | None = None,
    ) -> int:
        if key is None:
            key = self._next_edge
        if key in self._edge_index:
            raise ValueError(f"edge number {key} already in use")
        self._next_edge = max(self._next_edge, key + 1)
        self.graph.add_edge(parent, child, key=key, length=length, gamma=gamma)
        self._edge_index[key] = (parent, child)
        return key

    def copy(self) -> "PhyloNetwork":
        other = PhyloNetwork(self.graph.copy(), self.root)
        other._next_node = self._next_node
        other._next_edge = self._next_edge
        return other

    # queries

    def taxon(self, node: int) -> Taxon | None:
        return self.graph.nodes[node].get("taxon")

    def is_leaf(self, node: int) -> bool:
        return self.graph.out_degree(node) == 0

    def is_hybrid(self, node: int) -> bool:
        return self.graph.in_degree(node) >= 2

    def leaves(self) -> List[int]:
        return [n for n in self.graph.nodes if self.is_leaf(n)]

    def taxa(self) -> List[Taxon]:
        return [str(self.taxon(n)) for n in self.leaves()]

    def leaf(self, taxon: Taxon) -> int:
        for node in self.leaves():
            if self.taxon(node) == taxon:
                return node
        raise ValueError(f"taxon {taxon} not found in the network")

    def hybrid_nodes(self) -> List[int]:
        return [n for n in self.graph.nodes if self.is_hybrid(n)]

    @property
    def num_hybrids(self) -> int:
        return len(self.hybrid_nodes())

    def edges(self) -> List[EdgeRef]:
        return sorted(self.graph.edges(keys=True), key=lambda e: e[2])

    def parent_edges(self, node: int) -> List[EdgeRef]:
        return sorted(self.graph.in_edges(node, keys=True), key=lambda e: e[2])

    def child_edges(self, node: int) -> List[EdgeRef]:
        return sorted(self.graph.out_edges(node, keys=True), key=lambda e: e[2])

    def has_edge(self, key: int) -> bool:
        return key in self._edge_index

    def edge_endpoints(self, key: int) -> Tuple[int, int]:
        try:
            return self._edge_index[key]
        except KeyError:
            raise ValueError(f"edge number {key} not found in the network") from None

    def _edge_data(self, key: int) -> dict:
        u, v = self.edge_endpoints(key)
        return self.graph.edges[u, v, key]

    def edge_length(self, key: int) -> float | None:
        return self._edge_data(key)["length"]

    def set_edge_length(self, key: int, length: float | None) -> None:
        self._edge_data(key)["length"] = None if length is None else float(length)

    def is_hybrid_edge(self, key: int) -> bool:
        return self.is_hybrid(self.edge_endpoints(key)[1])

    def edge_gamma(self, key: int) -> float | None:
        if not self.is_hybrid_edge(key):
            return 1.0
        return self._edge_data(key)["gamma"]

    def set_edge_gamma(self, key: int, gamma: float | None) -> None:
        self._edge_data(key)["gamma"] = None if gamma is None else float(gamma)

    def is_major_edge(self, key: int) -> bool:
        """True for tree edges and for the largest-γ parent edge of a hybrid."""
        child = self.edge_endpoints(key)[1]
        parents = self.parent_edges(child)
        if len(parents) < 2:
            return True

        def rank(ref: EdgeRef) -> tuple[float, int]:
            gamma = self.graph.edges[ref]["gamma"]
            return (-1.0 if gamma is None else float(gamma), -ref[2])

        return max(parents, key=rank)[2] == key

    def preorder(self) -> List[int]:
        """Nodes listed so that every node comes after all of its parents."""
        return list(nx.topological_sort(self.graph))

    def descendant_taxa(self, node: int) -> set[Taxon]:
        below = nx.descendants(self.graph, node) | {node}
        return {str(self.taxon(n)) for n in below if self.is_leaf(n)}

    def hardwired_cluster(self, key: int, taxa: Sequence[Taxon]) -> List[bool]:
        """Membership of each of ``taxa`` below edge ``key``."""
        below = self.descendant_taxa(self.edge_endpoints(key)[1])
        return [t in below for t in taxa]

    def check_expected_cf_ready(self) -> None:
        if self.root is None or self.root not in self.graph:
            raise ValueError("the network has no root")
        if self.is_leaf(self.root):
            raise ValueError("The root can't be a leaf.")
        for _, _, key in self.edges():
            length = self.edge_length(key)
            if length is None or not length >= 0.0:
                raise ValueError(
                    "Edge lengths are needed in coalescent units to calculate expected CFs: "
                    f"edge {key} has length {length}"
                )
        for _, _, key in self.edges():
            gamma = self.edge_gamma(key)
            if gamma is None or not gamma >= 0.0:
                raise ValueError(
                    "some γ's are missing for hybrid edges: can't calculate expected CFs"
                )

    # simplification, always applied to working copies

    def _remove_edge(self, key: int) -> dict:
        u, v = self._edge_index.pop(key)
        data = dict(self.graph.edges[u, v, key])
        self.graph.remove_edge(u, v, key=key)
        return data

    def _remove_node(self, node: int) -> None:
        for _, _, key in self.parent_edges(node) + self.child_edges(node):
            self._remove_edge(key)
        self.graph.remove_node(node)

    def _fuse(self, node: int) -> None:
        """Suppress a node with one parent edge and one child edge."""
        (u, _, upper), = self.parent_edges(node)
        (_, w, lower), = self.child_edges(node)
        up = self._remove_edge(upper)
        down = self._remove_edge(lower)
        self.graph.remove_node(node)
        self.add_edge(u, w, _add_lengths(up["length"], down["length"]), down["gamma"], key=lower)

    def _cleanup(self) -> None:
        """Drop dead ends, fuse degree-2 nodes and push down a root of out-degree 1."""
        changed = True
        while changed:
            changed = False
            for node in list(self.graph.nodes):
                if node not in self.graph or node == self.root:
                    continue
                outdeg = self.graph.out_degree(node)
                if outdeg == 0 and self.taxon(node) is None:
                    self._remove_node(node)
                    changed = True
                elif outdeg == 1 and self.graph.in_degree(node) == 1:
                    self._fuse(node)
                    changed = True
            children = self.child_edges(self.root)
            if len(children) == 1 and not self.is_leaf(children[0][1]):
                old = self.root
                self.root = children[0][1]
                self._remove_node(old)
                changed = True

    def restrict_to_taxa(self, taxa: Iterable[Taxon]) -> "PhyloNetwork":
        """Copy of the sub-network ancestral to ``taxa``, degree-2 nodes suppressed.

        2-cycles created by the deletion are kept.
        """
        kept_leaves = [self.leaf(str(t)) for t in taxa]
        keep = set(kept_leaves)
        for leaf in kept_leaves:
            keep |= nx.ancestors(self.graph, leaf)
        sub = PhyloNetwork(self.graph.subgraph(keep).copy(), self.root)
        sub._next_node = self._next_node
        sub._next_edge = self._next_edge
        sub._cleanup()
        return sub

    def trim_above_lsa(self) -> None:
        """Delete everything above the least stable ancestor of the leaves."""
        leaves = self.leaves()
        lsa = self.root
        for node in self.preorder():
            if node == self.root or self.is_leaf(node):
                continue
            view = nx.restricted_view(self.graph, [node], [])
            reachable = nx.descendants(view, self.root)
            if not any(leaf in reachable for leaf in leaves):
                lsa = node
        if lsa == self.root:
            return
        keep = nx.descendants(self.graph, lsa) | {lsa}
        for node in list(self.graph.nodes):
            if node not in keep:
                self._remove_node(node)
        self.root = lsa

    def fuse_root_edges(self) -> None:
        """Remove a root of out-degree 2 by fusing its two edges."""
        children = self.child_edges(self.root)
        if len(children) != 2:
            return
        (_, x, kx), (_, y, ky) = children
        hx, hy = self.is_hybrid_edge(kx), self.is_hybrid_edge(ky)
        if hx and hy:
            raise RuntimeError(
                f"can't fuse edges at the root {self.root}: connected to 2 hybrid edges"
            )
        if hx or (not hy and not self.is_leaf(y)):
            new_root, other, key = y, x, kx
        else:
            new_root, other, key = x, y, ky
        data_x = self._remove_edge(kx)
        data_y = self._remove_edge(ky)
        gamma = data_x["gamma"] if key == kx else data_y["gamma"]
        self.graph.remove_node(self.root)
        self.root = new_root
        self.add_edge(new_root, other, _add_lengths(data_x["length"], data_y["length"]), gamma, key=key)

    def blobs(self) -> List[set[int]]:
        """Node sets of the non-trivial biconnected components (cycles, 2-cycles)."""
        undirected = nx.Graph(self.graph.to_undirected())
        out = []
        for component in nx.biconnected_components(undirected):
            if len(component) > 2:
                out.append(set(component))
            elif len(component) == 2:
                u, v = tuple(component)
                if self.graph.number_of_edges(u, v) + self.graph.number_of_edges(v, u) > 1:
                    out.append(set(component))
        return out

    def remove_external_blobs(self) -> None:
        """Keep only the major path through blobs with a single leaf below them."""
        position = {node: i for i, node in enumerate(self.preorder())}
        entries = []
        for blob in self.blobs():
            entry = min(blob, key=position.__getitem__)
            entries.append((position[entry], entry, blob))
        for _, entry, blob in sorted(entries, key=lambda item: item[0], reverse=True):
            if any(node not in self.graph for node in blob):
                continue
            exits = [
                n for n in blob
                if n != entry and any(w not in blob for _, w, _ in self.child_edges(n))
            ]
            if len(exits) != 1:
                continue
            below = self.child_edges(exits[0])
            if len(below) != 1 or not self.is_leaf(below[0][1]):
                continue
            inner = [key for u, v, key in self.edges() if u in blob and v in blob]
            for key in inner:
                if not self.has_edge(key):
                    continue
                if self.is_hybrid_edge(key) and not self.is_major_edge(key):
                    self.delete_hybrid_edge(key)

    def delete_hybrid_edge(self, key: int, unroot: bool = True) -> None:
        """Delete hybrid edge ``key`` and simplify what it leaves behind.

        2-cycles are not simplified. With ``unroot``, a root left with 2 child
        edges is removed by fusing them.
        """
        if not self.is_hybrid_edge(key):
            raise RuntimeError(f"edge {key} is not a hybrid edge")
        self._remove_edge(key)
        self._cleanup()
        if unroot and len(self.child_edges(self.root)) == 2:
            kids = self.child_edges(self.root)
            if not all(self.is_hybrid_edge(k) for _, _, k in kids):
                self.fuse_root_edges()

    def shrink_edge(self, key: int) -> None:
        """Contract a tree edge: its child's edges move up to its parent."""
        u, v = self.edge_endpoints(key)
        if self.is_hybrid(v):
            raise RuntimeError(f"can't shrink hybrid edge {key}")
        for _, w, child_key in self.child_edges(v):
            data = self._remove_edge(child_key)
            self.add_edge(u, w, data["length"], data["gamma"], key=child_key)
        self._remove_edge(key)
        self.graph.remove_node(v)

    def reattach_child_edge(self, key: int, new_parent: int) -> None:
        _, v = self.edge_endpoints(key)
        data = self._remove_edge(key)
        self.add_edge(new_parent, v, data["length"], data["gamma"], key=key)

    def ultrametrize(self) -> None:
        """Assign values to missing edge lengths, never changing existing ones.

        Node heights follow the major tree: the height of a node is the
        largest height reached through a child edge of known length, or one
        unit above its highest child if no such edge exists.
        """
        heights: Dict[int, float] = {}
        for node in reversed(self.preorder()):
            children = self.child_edges(node)
            if not children:
                heights[node] = 0.0
                continue
            known = [
                heights[w] + self.edge_length(key)
                for _, w, key in children
                if self.edge_length(key) is not None and self.is_major_edge(key)
            ]
            if known:
                heights[node] = max(known)
            else:
                heights[node] = max(heights[w] for _, w, _ in children) + 1.0
        for u, v, key in self.edges():
            if self.edge_length(key) is None:
                self.set_edge_length(key, max(heights[u] - heights[v], 0.0))


def _add_lengths(a: float | None, b: float | None) -> float | None:
    if a is None or b is None:
        return None
    return a + b


@dataclass
class _ParsedNode:
    label: str
    children: List["_ParsedNode"] = field(default_factory=list)
    length: float | None = None
    gamma: float | None = None


class _NewickParser:
    def __init__(self, text: str):
        self.text = text.strip()
        self.pos = 0

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _skip(self) -> None:
        while self.pos < len(self.text):
            c = self.text[self.pos]
            if c.isspace():
                self.pos += 1
            elif c == "[":
                end = self.text.find("]", self.pos)
                if end < 0:
                    raise ValueError("unterminated comment in extended Newick string")
                self.pos = end + 1
            else:
                break

    def parse(self) -> _ParsedNode:
        node = self._subtree()
        self._skip()
        if self._peek() != ";":
            raise ValueError(f"expected ';' at position {self.pos} of extended Newick string")
        return node

    def _subtree(self) -> _ParsedNode:
        self._skip()
        children: List[_ParsedNode] = []
        if self._peek() == "(":
            self.pos += 1
            children.append(self._subtree())
            while True:
                self._skip()
                c = self._peek()
                if c == ",":
                    self.pos += 1
                    children.append(self._subtree())
                elif c == ")":
                    self.pos += 1
                    break
                else:
                    raise ValueError(f"unexpected character {c!r} at position {self.pos}")
        label = self._label()
        length, gamma = self._annotation()
        return _ParsedNode(label, children, length, gamma)

    def _label(self) -> str:
        self._skip()
        if self._peek() == "'":
            end = self.text.find("'", self.pos + 1)
            if end < 0:
                raise ValueError("unterminated quoted label")
            label = self.text[self.pos + 1 : end]
            self.pos = end + 1
            return label
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in "(),:;[":
            self.pos += 1
        return self.text[start : self.pos].strip()

    def _annotation(self) -> tuple[float | None, float | None]:
        fields: List[str] = []
        self._skip()
        while self._peek() == ":" and len(fields) < 3:
            self.pos += 1
            start = self.pos
            while self.pos < len(self.text) and self.text[self.pos] not in "(),:;[":
                self.pos += 1
            fields.append(self.text[start : self.pos].strip())
        length = float(fields[0]) if fields and fields[0] else None
        gamma = float(fields[2]) if len(fields) > 2 and fields[2] else None
        return length, gamma


def read_network_newick(newick: str) -> PhyloNetwork:
    """Parse an extended Newick string (``#H`` hybrid labels, ``:length::gamma``)."""
    parsed = _NewickParser(newick).parse()
    net = PhyloNetwork()
    hybrids: Dict[str, int] = {}

    def visit(pnode: _ParsedNode, parent: int | None) -> None:
        match = _HYBRID_LABEL.match(pnode.label)
        if match:
            name = match.group("name")
            node = hybrids.get(name)
            if node is None:
                node = net.add_node(name=name)
                hybrids[name] = node
        elif pnode.children:
            node = net.add_node(name=pnode.label or None)
        else:
            if not pnode.label:
                raise ValueError("all leaves must be labelled")
            node = net.add_node(taxon=pnode.label)
        if parent is None:
            net.root = node
        else:
            net.add_edge(parent, node, pnode.length, pnode.gamma)
        for child in pnode.children:
            visit(child, node)

    visit(parsed, None)

    for name, node in hybrids.items():
        parents = net.parent_edges(node)
        if len(parents) < 2 or net.is_leaf(node):
            raise ValueError(f"hybrid node #{name} needs 2+ parents and a child")
        gammas = [net.graph.edges[ref]["gamma"] for ref in parents]
        if len(parents) == 2 and sum(g is None for g in gammas) == 1:
            known = next(g for g in gammas if g is not None)
            for ref, g in zip(parents, gammas):
                if g is None:
                    net.set_edge_gamma(ref[2], 1.0 - known)
    taxa = net.taxa()
    if len(set(taxa)) != len(taxa):
        raise ValueError("taxon labels must be unique")
    return net


def read_network(source: str) -> PhyloNetwork:
    """Read a network from a file (first non-empty line) or an extended Newick string."""
    path = Path(source)
    if not source.strip().endswith(";") and path.is_file():
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    return read_network_newick(line)
        raise ValueError(f"no network found in {source}")
    return read_network_newick(source)


def _format_number(x: float) -> str:
    return repr(float(x)) if math.isfinite(x) else str(x)


def write_network_newick(net: PhyloNetwork) -> str:
    """Extended Newick string; a hybrid's subtree is written below its major edge."""

    def annotation(key: int) -> str:
        length = net.edge_length(key)
        out = ":" + ("" if length is None else _format_number(length))
        if net.is_hybrid_edge(key):
            gamma = net.edge_gamma(key)
            out += "::" + ("" if gamma is None else _format_number(gamma))
        return out

    def render(node: int, key: int | None) -> str:
        if net.is_hybrid(node):
            name = "#" + (net.graph.nodes[node].get("name") or f"H{node}")
            if key is not None and not net.is_major_edge(key):
                return name + annotation(key)
        else:
            name = net.taxon(node) or ""
        kids = net.child_edges(node)
        text = ""
        if kids:
            text = "(" + ",".join(render(w, k) for _, w, k in kids) + ")"
        text += name
        if key is not None:
            text += annotation(key)
        return text

    return render(net.root, None) + ";"
