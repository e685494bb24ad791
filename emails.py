from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from insights import format_amount


TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render_email(
    template: str,
    *,
    user_name: Optional[str],
    currency_symbol: str = "₹",
    **data: Any,
) -> str:
    def money(cents: Any) -> str:
        return format_amount(int(cents), currency_symbol)

    return _env.get_template(f"{template}.html").render(
        user_name=user_name or "there", money=money, **data
    )
