"""
Modelo de grafo do fluxo (arena imutável).

O grafo autoral (JSON do Flow Builder) é validado uma única vez, na publicação,
e convertido em um FlowGraph somente-leitura: nós indexados por id e arestas
de saída na ordem em que foram desenhadas.
"""
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.errors import GraphValidationError
from core.logger import setup_logger
from schemas import FlowEdge, FlowGraphSchema, FlowNode, MEDIA_KINDS

logger = setup_logger("FlowGraph")

FAILURE_LABEL = "failure"
DEFAULT_LABEL = "default"
TRUE_LABEL = "true"
FALSE_LABEL = "false"

# Rótulos aceitos do construtor (Sim/Não, yes/no) normalizados para true/false
BOOLEAN_LABELS = {
    "true": TRUE_LABEL, "yes": TRUE_LABEL, "sim": TRUE_LABEL,
    "false": FALSE_LABEL, "no": FALSE_LABEL, "não": FALSE_LABEL, "nao": FALSE_LABEL,
}

EXECUTABLE_KINDS = (
    "trigger", "text", "ai", "condition", "delay", "http_request",
    "integration_crm", "integration_chat", "stop",
) + MEDIA_KINDS


def case_label(case, index: int) -> str:
    return (case.label or "").strip() or f"case-{index}"


class FlowGraph:
    """Grafo validado. Compartilhado entre sessões, nunca alterado."""

    def __init__(self, nodes: Dict[str, FlowNode], outgoing: Dict[str, Tuple[FlowEdge, ...]], trigger_id: str, order: List[str]):
        self.nodes = MappingProxyType(nodes)
        self.outgoing = MappingProxyType(outgoing)
        self.trigger_id = trigger_id
        self._order = tuple(order)

    @property
    def trigger(self) -> FlowNode:
        return self.nodes[self.trigger_id]

    def node(self, node_id: str) -> Optional[FlowNode]:
        return self.nodes.get(node_id)

    def edges_from(self, node_id: str) -> Tuple[FlowEdge, ...]:
        return self.outgoing.get(node_id, ())

    def failure_edge(self, node_id: str) -> Optional[FlowEdge]:
        return next((e for e in self.edges_from(node_id) if e.label == FAILURE_LABEL), None)

    def successor(self, node_id: str, label: Optional[str] = None) -> Optional[str]:
        """
        Próximo nó a partir de node_id.
        Com label: a aresta com aquele rótulo. Sem label: a primeira aresta comum
        (arestas de falha nunca são seguidas em caso de sucesso).
        """
        edges = [e for e in self.edges_from(node_id) if e.label != FAILURE_LABEL]
        if label is not None:
            match = next((e for e in edges if e.label == label), None)
            return match.target if match else None

        if not edges:
            return None
        if len(edges) > 1:
            logger.warning(f"⚠️ Nó {node_id} tem {len(edges)} saídas; seguindo a primeira ({edges[0].target})")
        return edges[0].target

    def report_nodes(self) -> List[FlowNode]:
        """Nós na ordem autoral, sem o gatilho (colunas do relatório)."""
        return [self.nodes[nid] for nid in self._order if self.nodes[nid].kind != "trigger"]


def parse_graph(raw: dict) -> FlowGraphSchema:
    try:
        return FlowGraphSchema.model_validate(raw or {})
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise GraphValidationError(f"Configuração inválida em {location}: {first.get('msg')}") from e


def _reachable(start: str, outgoing: Dict[str, List[FlowEdge]]) -> List[str]:
    seen = {start}
    stack = [start]
    order = []
    while stack:
        current = stack.pop()
        order.append(current)
        for edge in outgoing.get(current, []):
            if edge.target not in seen:
                seen.add(edge.target)
                stack.append(edge.target)
    return order


def _check_condition_edges(node: FlowNode, edges: List[FlowEdge]):
    config = node.config
    labels = [e.label for e in edges if e.label != FAILURE_LABEL]

    if config.mode == "simple":
        expected = [TRUE_LABEL, FALSE_LABEL]
    else:
        if not config.cases:
            raise GraphValidationError(f"Condição {node.id}: o switch precisa de pelo menos um caso")
        expected = [case_label(c, i) for i, c in enumerate(config.cases)]
        lowered = [label.lower() for label in expected]
        if len(set(lowered)) != len(lowered):
            raise GraphValidationError(f"Condição {node.id}: rótulos de caso duplicados")
        for reserved in (DEFAULT_LABEL, FAILURE_LABEL):
            if reserved in lowered:
                raise GraphValidationError(f"Condição {node.id}: '{reserved}' é reservado")
        expected.append(DEFAULT_LABEL)

    for label in labels:
        if label not in expected:
            raise GraphValidationError(f"Condição {node.id}: saída '{label}' não corresponde a nenhum ramo")
    for label in expected:
        if labels.count(label) != 1:
            raise GraphValidationError(f"Condição {node.id}: precisa de exatamente uma saída '{label}'")


def validate_graph(raw: dict) -> FlowGraph:
    """
    Valida o grafo autoral e devolve a arena imutável.
    Levanta GraphValidationError(reason) na primeira violação encontrada.
    """
    parsed = parse_graph(raw)

    nodes: Dict[str, FlowNode] = {}
    order: List[str] = []
    for node in parsed.nodes:
        if node.id in nodes:
            raise GraphValidationError(f"ID de nó duplicado: {node.id}")
        nodes[node.id] = node
        order.append(node.id)

    triggers = [n for n in parsed.nodes if n.kind == "trigger"]
    if len(triggers) != 1:
        raise GraphValidationError(f"O fluxo precisa de exatamente um gatilho (encontrados: {len(triggers)})")
    trigger = triggers[0]

    outgoing: Dict[str, List[FlowEdge]] = {}
    edge_ids = set()
    for edge in parsed.edges:
        if edge.id in edge_ids:
            raise GraphValidationError(f"ID de aresta duplicado: {edge.id}")
        edge_ids.add(edge.id)
        if edge.source not in nodes:
            raise GraphValidationError(f"Aresta {edge.id} sai de um nó inexistente: {edge.source}")
        if edge.target not in nodes:
            raise GraphValidationError(f"Aresta {edge.id} aponta para um nó inexistente: {edge.target}")
        if edge.target == trigger.id:
            raise GraphValidationError("O gatilho não pode ter arestas de entrada")

        label = (edge.label or "").strip() or None
        source = nodes[edge.source]
        if label and label.lower() == FAILURE_LABEL:
            if source.kind == "trigger":
                raise GraphValidationError("O gatilho não pode ter aresta de falha")
            if any(e.label == FAILURE_LABEL for e in outgoing.get(source.id, [])):
                raise GraphValidationError(f"Nó {source.id} tem mais de uma aresta de falha")
            label = FAILURE_LABEL
        elif source.kind == "condition" and source.config.mode == "simple" and label:
            label = BOOLEAN_LABELS.get(label.lower(), label)
        elif source.kind == "condition" and source.config.mode == "switch" and label and label.lower() == DEFAULT_LABEL:
            label = DEFAULT_LABEL

        outgoing.setdefault(edge.source, []).append(edge.model_copy(update={"label": label}))

    for node_id in _reachable(trigger.id, outgoing):
        node = nodes[node_id]
        if node.kind not in EXECUTABLE_KINDS:
            raise GraphValidationError(f"Nó {node_id} tem tipo sem executor: {node.kind}")
        if node.kind == "condition":
            _check_condition_edges(node, outgoing.get(node_id, []))

    return FlowGraph(
        nodes=nodes,
        outgoing={k: tuple(v) for k, v in outgoing.items()},
        trigger_id=trigger.id,
        order=order,
    )
