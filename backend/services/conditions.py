import re
from typing import List, Optional

from core.logger import setup_logger

logger = setup_logger("Conditions")

EQUALS = ("equals", "==")
NOT_EQUALS = ("notEquals", "!=")


def evaluate(operator: Optional[str], left, right) -> bool:
    """
    Compara left com right segundo o operador. Nunca levanta exceção.

    equals/notEquals: comparação exata (sensível a maiúsculas, sem trim).
    contains/startsWith/endsWith: sem diferenciar maiúsculas.
    regex: right é o padrão; padrão inválido resulta em False.
    Operador desconhecido cai em 'contains' (comportamento legado).
    """
    left = "" if left is None else str(left)
    right = "" if right is None else str(right)

    if operator in EQUALS or operator == "variable":
        return left == right
    if operator in NOT_EQUALS:
        return left != right
    if operator == "startsWith":
        return left.lower().startswith(right.lower())
    if operator == "endsWith":
        return left.lower().endswith(right.lower())
    if operator == "regex":
        try:
            return re.search(right, left) is not None
        except re.error as e:
            logger.error(f"❌ Regex inválida '{right}': {e}")
            return False

    if operator != "contains":
        logger.warning(f"⚠️ Operador desconhecido '{operator}', usando 'contains'")
    return right.lower() in left.lower()


def resolve_switch(cases: List, value) -> Optional[int]:
    """Índice do primeiro caso que casa com o valor (ordem autoral), ou None para 'default'."""
    for index, case in enumerate(cases):
        if evaluate(case.operator, value, case.value):
            return index
    return None
