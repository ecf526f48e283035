"""
Variáveis de sessão e interpolação de templates {{variavel}}.
"""
import json
import re
from typing import Any, Dict, List, Optional

# {{nome}} ou {{ nome }}; apenas caracteres de palavra ASCII
TOKEN_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}", re.ASCII)
FLATMAP_RE = re.compile(r"^(?P<base>.*?)\.flatMap\(\s*(?P<var>\w+)\s*=>\s*(?P=var)(?:\.(?P<sub>.*))?\)$")
INDEX_RE = re.compile(r"\[(\d+)\]")

# Variável com a última resposta do contato (usada pelas condições e prompts de IA)
LAST_REPLY_VAR = "mensagem_usuario"
AI_OUTPUT_VAR = "resposta_ia"
HTTP_STATUS_VAR = "http_status"
ERROR_REASON_VAR = "errorReason"


def render_value(value: Any) -> str:
    """Converte valores não-texto para o texto inserido na mensagem."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return ", ".join(render_value(v) for v in value)
    return json.dumps(value, ensure_ascii=False)


def contact_variables(contact) -> Dict[str, str]:
    """Variáveis embutidas derivadas do contato."""
    if contact is None:
        return {}
    return {
        "nome": contact.name or "",
        "telefone": contact.phone or "",
        "email": contact.email or "",
        "categoria": contact.category or "",
        "observacoes": contact.notes or "",
    }


def build_variables(contact, session_vars: Optional[Dict[str, Any]] = None,
                    last_reply: Optional[str] = None) -> Dict[str, Any]:
    """Embutidas do contato sobrescritas pelas variáveis da sessão e pela última resposta."""
    merged = contact_variables(contact)
    merged.update(session_vars or {})
    if last_reply is not None:
        merged[LAST_REPLY_VAR] = last_reply
    return merged


def interpolate(template: Optional[str], variables: Dict[str, Any]) -> str:
    """
    Substitui {{identificador}} pelo valor da variável.
    Tokens sem valor permanecem literalmente no texto.
    """
    if not template:
        return ""

    def _replace(match):
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return render_value(variables[name])

    return TOKEN_RE.sub(_replace, template)


def _walk(data: Any, path: str) -> Any:
    current = data
    path = INDEX_RE.sub(r".\1", path)
    for part in path.split("."):
        if part == "":
            continue
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def extract_json_path(data: Any, path: str) -> Any:
    """
    Extrai um valor de um JSON por caminho com pontos (ex: 'data.user.name', 'items.0.id').
    Aceita o sufixo '.flatMap(item => item.campo)' gerado pelo construtor para listas,
    inclusive aninhado. Caminho inexistente retorna None.
    """
    path = (path or "").strip()
    if not path:
        return data

    match = FLATMAP_RE.match(path)
    if not match:
        return _walk(data, path)

    base = extract_json_path(data, match.group("base")) if match.group("base") else data
    if not isinstance(base, list):
        return None

    result = []
    sub_path = match.group("sub") or ""
    for item in base:
        value = extract_json_path(item, sub_path)
        if isinstance(value, list):
            result.extend(value)
        elif value is not None:
            result.append(value)
    return result


def default_variable_name(path: str) -> str:
    """Nome sugerido para a variável de um caminho JSON: 'data.flatMap(item => item.name)' -> 'data_name'."""
    name = re.sub(r"\.?flatMap\(\s*\w+\s*=>\s*\w+\.?", ".", path or "")
    name = name.replace(")", "").strip(".")
    name = re.sub(r"\.+", "_", name)
    return re.sub(r"[^a-zA-Z0-9_]", "", name)


def suggest_json_paths(sample: Any, prefix: str = "") -> List[str]:
    """Lista os caminhos selecionáveis de uma resposta de exemplo (teste do nó HTTP)."""
    paths: List[str] = []
    if sample is None:
        return paths

    if isinstance(sample, list):
        if sample:
            for item_path in suggest_json_paths(sample[0]):
                paths.append(f"{prefix}.flatMap(item => item.{item_path})")
        return paths

    if isinstance(sample, dict):
        for key, value in sample.items():
            current = f"{prefix}.{key}" if prefix else key
            if isinstance(value, list) and value:
                paths.append(current)
                for item_path in suggest_json_paths(value[0]):
                    paths.append(f"{current}.flatMap(item => item.{item_path})")
            elif isinstance(value, dict):
                paths.extend(suggest_json_paths(value, current))
            else:
                paths.append(current)
    return paths
