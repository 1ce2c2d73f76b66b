"""
Alert message templates and threshold conditions.

Templates use `{{name}}` placeholders. Values are rendered in Brazilian
Portuguese conventions (R$ currency, "." thousands, "," decimals).
"""
import re
import unicodedata
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
CURRENCY_THRESHOLD = 100
DEFAULT_TEMPLATE = "🔔 {{nome_alerta}}\n📊 Valor: {{valor}}\n📅 {{data}} às {{hora}}"
NO_DATA = "Sem dados"


class Condition(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Condition"]:
        if value is None:
            return None
        key = str(value).strip()
        if not key:
            return None
        if key in CONDITION_SYMBOLS:
            return CONDITION_SYMBOLS[key]
        try:
            return cls(key.lower())
        except ValueError:
            raise ValueError(f"Unknown condition operator: {value!r}") from None


CONDITION_SYMBOLS: Dict[str, Condition] = {
    ">": Condition.GREATER_THAN,
    "<": Condition.LESS_THAN,
    "=": Condition.EQUALS,
    "==": Condition.EQUALS,
    "≠": Condition.NOT_EQUALS,
    "!=": Condition.NOT_EQUALS,
    "≥": Condition.GREATER_OR_EQUAL,
    ">=": Condition.GREATER_OR_EQUAL,
    "≤": Condition.LESS_OR_EQUAL,
    "<=": Condition.LESS_OR_EQUAL,
}

CONDITION_LABELS: Dict[Condition, str] = {
    Condition.GREATER_THAN: "Maior que",
    Condition.LESS_THAN: "Menor que",
    Condition.EQUALS: "Igual a",
    Condition.NOT_EQUALS: "Diferente de",
    Condition.GREATER_OR_EQUAL: "Maior ou igual",
    Condition.LESS_OR_EQUAL: "Menor ou igual",
}


def evaluate_condition(value: Optional[float], condition: Optional[str], threshold: Optional[float]) -> bool:
    """
    True when the alert should fire. No condition or no threshold means
    always fire; a configured condition with no value never fires.
    """
    parsed = Condition.parse(condition) if not isinstance(condition, Condition) else condition
    if parsed is None or threshold is None:
        return True
    if value is None:
        return False

    if parsed is Condition.GREATER_THAN:
        return value > threshold
    if parsed is Condition.LESS_THAN:
        return value < threshold
    if parsed is Condition.EQUALS:
        return value == threshold
    if parsed is Condition.NOT_EQUALS:
        return value != threshold
    if parsed is Condition.GREATER_OR_EQUAL:
        return value >= threshold
    return value <= threshold


def condition_label(condition: Optional[str]) -> str:
    try:
        parsed = Condition.parse(condition)
    except ValueError:
        return str(condition)
    if parsed is None:
        return "-"
    return CONDITION_LABELS[parsed]


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _group_thousands(digits: str) -> str:
    parts = []
    while len(digits) > 3:
        parts.insert(0, digits[-3:])
        digits = digits[:-3]
    parts.insert(0, digits)
    return ".".join(parts)


def format_number(value: float, decimals: Optional[int] = None) -> str:
    """1234.5 -> '1.234,5'; decimals=None keeps up to three significant decimals"""
    negative = value < 0
    if decimals is None:
        text = f"{abs(value):.3f}".rstrip("0").rstrip(".")
    else:
        text = f"{abs(value):.{decimals}f}"
    integer, _, fraction = text.partition(".")
    formatted = _group_thousands(integer)
    if fraction:
        formatted = f"{formatted},{fraction}"
    return f"-{formatted}" if negative else formatted


def format_currency(value: float) -> str:
    formatted = format_number(abs(value), decimals=2)
    return f"-R$ {formatted}" if value < 0 else f"R$ {formatted}"


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if is_number(value):
        if abs(value) >= CURRENCY_THRESHOLD:
            return format_currency(value)
        return format_number(value)
    return str(value)


def clean_column_name(key: str) -> str:
    """'[Valor]' -> 'valor', 'Vendas[Valor Total]' -> 'valor_total'"""
    name = key.strip()
    if "[" in name:
        name = name[name.rindex("[") + 1:]
    name = name.replace("]", "").strip().lower()
    return re.sub(r"[^0-9a-z_]+", "_", _strip_accents(name)).strip("_")


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def first_numeric_value(rows: List[Dict[str, Any]]) -> Optional[float]:
    if not rows:
        return None
    for value in rows[0].values():
        if is_number(value):
            return value
    return None


def placeholders(template: str) -> Set[str]:
    return {match.group(1) for match in PLACEHOLDER_RE.finditer(template or "")}


class TemplateVariables(Mapping[str, str]):
    """Placeholder name -> rendered string"""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, str] = {}
        for key, value in (values or {}).items():
            self[key] = value

    def __setitem__(self, key: str, value: Any) -> None:
        name = str(key).strip()
        if name.startswith("{{") and name.endswith("}}"):
            name = name[2:-2].strip()
        if not name or "{" in name or "}" in name:
            raise ValueError(f"Invalid placeholder name: {key!r}")
        self._values[name] = value if isinstance(value, str) else format_value(value)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def update_from_row(self, row: Mapping[str, Any]) -> None:
        """Expose every column under its raw name and its slug"""
        for key, value in row.items():
            formatted = format_value(value)
            self[key] = formatted
            slug = clean_column_name(key)
            if slug:
                self[slug] = formatted


def missing_placeholders(template: str, variables: Mapping[str, str]) -> Set[str]:
    return placeholders(template) - set(variables)


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace every declared placeholder found in `variables` in one pass"""
    def substitute(match):
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template or "")


LABEL_HINTS = ("filial", "nome", "empresa", "cliente", "produto", "vendedor",
               "categoria", "grupo", "regiao", "loja", "unidade")
VALUE_HINTS = ("valor", "value", "amount", "total")


def _pick_columns(rows: List[Dict[str, Any]], keys: Iterable[str]):
    keys = list(keys)
    value_key = next((k for k in keys if any(h in clean_column_name(k) for h in VALUE_HINTS)), None)
    if value_key is None:
        value_key = next((k for k in keys if any(is_number(row.get(k)) for row in rows)), None)
    label_key = next(
        (k for k in keys if k != value_key and any(h in clean_column_name(k) for h in LABEL_HINTS)),
        None,
    )
    if label_key is None:
        label_key = next((k for k in keys if k != value_key), None)
    return label_key, value_key


def format_dax_result(rows: List[Dict[str, Any]]) -> str:
    """Human summary of a result set for the {{valor}} placeholder"""
    if not rows:
        return NO_DATA

    first = rows[0]
    if len(rows) == 1:
        for value in first.values():
            if is_number(value):
                return format_currency(value)
        values = list(first.values())
        return str(values[0]) if values and values[0] is not None else NO_DATA

    label_key, value_key = _pick_columns(rows, first.keys())

    lines = []
    total_line = None
    for row in rows:
        label = str(row.get(label_key) or "") if label_key else ""
        raw = row.get(value_key) if value_key else None
        if not label and raw is None:
            continue

        if is_number(raw):
            formatted = format_currency(raw)
        elif raw is not None:
            formatted = str(raw)
        else:
            formatted = format_currency(0)

        if "TOTAL" in label.upper():
            total_line = f"━━━━━━━━━━━━━━\n*{label}*: {formatted}"
        elif label:
            lines.append(f"• {label}: {formatted}")

    text = "\n".join(lines)
    if total_line:
        text = f"{text}\n{total_line}" if text else total_line
    return text or NO_DATA


WEEKDAY_NAMES = ("segunda-feira", "terça-feira", "quarta-feira", "quinta-feira",
                 "sexta-feira", "sábado", "domingo")
MONTH_NAMES = ("janeiro", "fevereiro", "março", "abril", "maio", "junho", "julho",
               "agosto", "setembro", "outubro", "novembro", "dezembro")


def format_long_date(value: date) -> str:
    """date(2026, 10, 16) -> 'sexta-feira, 16 de outubro de 2026'"""
    weekday = WEEKDAY_NAMES[value.weekday()]
    return f"{weekday}, {value.day} de {MONTH_NAMES[value.month - 1]} de {value.year}"
