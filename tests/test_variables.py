from types import SimpleNamespace

from services.variables import (
    build_variables, default_variable_name, extract_json_path, interpolate, render_value, suggest_json_paths,
)


class TestInterpolate:
    def test_replaces_known_tokens(self):
        assert interpolate("Hello {{nome}}", {"nome": "Ana"}) == "Hello Ana"
        assert interpolate("Olá {{ nome }}!", {"nome": "Ana"}) == "Olá Ana!"

    def test_unresolved_tokens_pass_through(self):
        assert interpolate("{{missing}}", {}) == "{{missing}}"
        assert interpolate("{{nome}} {{sobrenome}}", {"nome": "Ana"}) == "Ana {{sobrenome}}"

    def test_non_word_tokens_are_not_replaced(self):
        assert interpolate("{{nome-completo}}", {"nome-completo": "x"}) == "{{nome-completo}}"

    def test_empty_template(self):
        assert interpolate(None, {"a": 1}) == ""

    def test_renders_non_string_values(self):
        variables = {"n": 3, "ok": True, "tags": ["a", "b"], "obj": {"x": 1}, "nada": None}
        assert interpolate("{{n}}|{{ok}}|{{tags}}|{{obj}}|{{nada}}", variables) == '3|true|a, b|{"x": 1}|'

    def test_render_value(self):
        assert render_value(1.5) == "1.5"
        assert render_value([1, None]) == "1, "


class TestBuildVariables:
    def test_contact_builtins_overridden_by_session(self):
        contact = SimpleNamespace(name="Ana", phone="5511999990000", email=None, category="vip", notes="")
        merged = build_variables(contact, {"nome": "Ana Maria", "pedido": "42"})
        assert merged["nome"] == "Ana Maria"
        assert merged["telefone"] == "5511999990000"
        assert merged["email"] == ""
        assert merged["categoria"] == "vip"
        assert merged["pedido"] == "42"

    def test_last_reply_wins_over_stored_copy(self):
        contact = SimpleNamespace(name="Ana", phone="", email=None, category=None, notes=None)
        merged = build_variables(contact, {"mensagem_usuario": "antiga"}, last_reply="sim")
        assert merged["mensagem_usuario"] == "sim"
        assert build_variables(contact, {"mensagem_usuario": "antiga"})["mensagem_usuario"] == "antiga"


class TestJsonPath:
    payload = {
        "data": [
            {"name": "Ana", "tags": [{"name": "vip"}, {"name": "novo"}]},
            {"name": "Bia", "tags": [{"name": "antigo"}]},
        ],
        "meta": {"total": 2, "page": {"number": 1}},
    }

    def test_dotted_and_indexed_paths(self):
        assert extract_json_path(self.payload, "meta.total") == 2
        assert extract_json_path(self.payload, "meta.page.number") == 1
        assert extract_json_path(self.payload, "data.0.name") == "Ana"
        assert extract_json_path(self.payload, "data[1].name") == "Bia"

    def test_missing_paths_return_none(self):
        assert extract_json_path(self.payload, "meta.nope") is None
        assert extract_json_path(self.payload, "data.5.name") is None
        assert extract_json_path(self.payload, "meta.total.x") is None

    def test_flatmap(self):
        assert extract_json_path(self.payload, "data.flatMap(item => item.name)") == ["Ana", "Bia"]

    def test_nested_flatmap_flattens(self):
        path = "data.flatMap(item => item.tags.flatMap(item => item.name))"
        assert extract_json_path(self.payload, path) == ["vip", "novo", "antigo"]

    def test_flatmap_on_non_list_is_none(self):
        assert extract_json_path(self.payload, "meta.flatMap(item => item.total)") is None

    def test_default_variable_name(self):
        assert default_variable_name("data.flatMap(item => item.name)") == "data_name"
        assert default_variable_name("meta.page.number") == "meta_page_number"

    def test_suggest_json_paths(self):
        paths = suggest_json_paths(self.payload)
        assert "data" in paths
        assert "data.flatMap(item => item.name)" in paths
        assert "data.flatMap(item => item.tags.flatMap(item => item.name))" in paths
        assert "meta.total" in paths
        assert "meta.page.number" in paths
        for path in paths:
            assert extract_json_path(self.payload, path) is not None
