"""
Taxonomia de erros do motor de campanhas interativas.

Os erros de nó (NodeExecutionError) nunca atravessam a fronteira da sessão:
são gravados no VisitRecord e viram status FAILED (ou seguem a aresta de falha).
Expiração não é exceção, é o status EXPIRED aplicado pela varredura.
"""


class FlowEngineError(Exception):
    """Base de todos os erros do motor."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class GraphValidationError(FlowEngineError):
    """Grafo malformado. Fatal na publicação, nunca em tempo de execução."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NodeExecutionError(FlowEngineError):
    """Falha de um nó para uma sessão (timeout, HTTP não-2xx, IA, mídia ausente, JSON inválido)."""

    def __init__(self, message: str, node_id: str = None):
        super().__init__(message)
        self.node_id = node_id


class SchedulingError(FlowEngineError):
    """Campanha sem contatos ou sem canal elegível. Exibido ao operador, não derruba a campanha."""


class CampaignStateError(FlowEngineError):
    """Transição de ciclo de vida inválida (ex: pausar uma campanha em rascunho)."""


class NotFoundError(FlowEngineError):
    """Registro (campanha, sessão, contato) inexistente para o tenant."""
