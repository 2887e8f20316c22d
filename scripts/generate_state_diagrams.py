"""
ייצור דיאגרמות Mermaid ממכונת המצבים של העסקאות.

שימוש:
    python scripts/generate_state_diagrams.py                  # הדפסה למסך
    python scripts/generate_state_diagrams.py --update-readme  # עדכון README.md
    python scripts/generate_state_diagrams.py --check          # בדיקה שהדיאגרמות מסונכרנות (ל-CI)
"""
import argparse
import re
import sys
from pathlib import Path
from typing import Any

# הוספת root לנתיב כדי לאפשר ייבוא
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.state_machine.states import (
    STATUS_EVENTS,
    TERMINAL_STATUSES,
    TRANSACTION_LABELS,
    TRANSACTION_TRANSITIONS,
)

README_PATH = Path(__file__).resolve().parent.parent / "README.md"

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"
SECTION_TITLE = "### דיאגרמות מכונת מצבים"


def _sanitize_id(state_value: str) -> str:
    """המרת ערך state למזהה תקין ב-Mermaid (ללא נקודות)."""
    return state_value.replace(".", "_")


def generate_mermaid_from_transitions(
    transitions: dict[Any, list[Any]],
    labels: dict[str, str],
    initial: Any,
    terminals: frozenset = frozenset(),
    edge_labels: dict[Any, str] | None = None,
) -> str:
    """
    ייצור דיאגרמת stateDiagram-v2 מ-transition dictionary.

    Args:
        transitions: מילון מעברים {state: [target_states]}
        labels: מילון תוויות {state_value: "תווית"}
        initial: ה-state שאליו נכנסים מ-[*]
        terminals: states שיוצאים מהם ל-[*]
        edge_labels: תווית לכל מעבר לפי ה-state שאליו נכנסים (למשל שם האירוע)
    """
    edge_labels = edge_labels or {}
    lines: list[str] = ["stateDiagram-v2"]

    # איסוף כל ה-states
    all_states: set[str] = set()
    for source, targets in transitions.items():
        all_states.add(source.value)
        for target in targets:
            all_states.add(target.value)

    for state_value in sorted(all_states):
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")
    lines.append(f"    [*] --> {_sanitize_id(initial.value)}")
    lines.append("")

    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        for target in targets:
            arrow = f"    {source_id} --> {_sanitize_id(target.value)}"
            if target in edge_labels:
                arrow += f" : {edge_labels[target]}"
            lines.append(arrow)

    terminal_values = sorted(t.value for t in terminals)
    if terminal_values:
        lines.append("")
        for value in terminal_values:
            lines.append(f"    {_sanitize_id(value)} --> [*]")

    return "\n".join(lines)


def generate_transaction_diagram() -> str:
    """דיאגרמת TransactionStatus — המעברים מתויגים באירוע ה-webhook שנשלח."""
    from app.db.models.transaction import TransactionStatus

    return generate_mermaid_from_transitions(
        TRANSACTION_TRANSITIONS,
        TRANSACTION_LABELS,
        initial=TransactionStatus.PENDING,
        terminals=TERMINAL_STATUSES,
        edge_labels={status: event.value for status, event in STATUS_EVENTS.items()},
    )


def generate_delivery_attempt_diagram() -> str:
    """דיאגרמת ניסיון שליחת webhook — מבוססת על הלוגיקה ב-WebhookDispatcher."""
    return """stateDiagram-v2
    attempting : שליחת POST חתום
    delivered : 2xx התקבל
    waiting : המתנה (backoff)
    exhausted : כל הניסיונות נכשלו
    cancelled : בוטל

    [*] --> attempting
    attempting --> delivered : 2xx
    attempting --> waiting : כשל ונותרו ניסיונות
    attempting --> exhausted : כשל בניסיון האחרון
    waiting --> attempting : עבר זמן ה-backoff
    waiting --> cancelled : subscription הושבת או כיבוי
    delivered --> [*]
    exhausted --> [*]
    cancelled --> [*]"""


def generate_all_diagrams() -> dict[str, str]:
    """ייצור כל הדיאגרמות ומחזיר מילון {שם: mermaid_string}."""
    return {
        "עסקה (TransactionStatus)": generate_transaction_diagram(),
        "שליחת webhook (WebhookDelivery)": generate_delivery_attempt_diagram(),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    """עיצוב הדיאגרמות כ-markdown עם בלוקי mermaid."""
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def _build_section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n{SECTION_TITLE}\n\n{markdown_content}\n{END_MARKER}"


_SECTION_PATTERN = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)


def update_readme(markdown_content: str, path: Path = README_PATH) -> None:
    """עדכון README.md עם הדיאגרמות — מחליף את הבלוק בין הסמנים או מוסיף לסוף."""
    content = path.read_text(encoding="utf-8") if path.exists() else ""
    new_section = _build_section(markdown_content)

    if START_MARKER in content:
        content = _SECTION_PATTERN.sub(lambda _: new_section, content)
    else:
        content = content.rstrip("\n") + "\n\n" + new_section + "\n"

    path.write_text(content, encoding="utf-8")
    print(f"עודכן: {path}")


def check_readme(markdown_content: str, path: Path = README_PATH) -> bool:
    """
    בדיקה שהדיאגרמות ב-README.md מסונכרנות עם הקוד.

    מחזיר True אם הכל מסונכרן, False אם יש הבדלים.
    """
    if not path.exists():
        print(f"שגיאה: {path.name} לא נמצא")
        return False

    match = _SECTION_PATTERN.search(path.read_text(encoding="utf-8"))
    if not match:
        print(f"שגיאה: לא נמצאו סמני דיאגרמות ב-{path.name}")
        return False

    if match.group(0) == _build_section(markdown_content):
        print("הדיאגרמות מסונכרנות עם הקוד ✓")
        return True

    print(f"שגיאה: הדיאגרמות ב-{path.name} אינן מסונכרנות עם הקוד!")
    print("הרץ: python scripts/generate_state_diagrams.py --update-readme")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(
        description="ייצור דיאגרמות Mermaid ממכונת המצבים"
    )
    parser.add_argument(
        "--update-readme",
        action="store_true",
        help="עדכון אוטומטי של README.md עם הדיאגרמות",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="בדיקה שהדיאגרמות ב-README.md מסונכרנות עם הקוד (ל-CI)",
    )
    args = parser.parse_args()

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_readme(markdown) else 1)
    elif args.update_readme:
        update_readme(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
