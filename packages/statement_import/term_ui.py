"""Terminal review of an import run (prompt_toolkit-based).

``review_in_terminal`` runs a small command loop over a
:class:`~statement_import.review.ReviewSession`; ``select_category`` is the
completion-aware category picker it opens for ``c N``. Both accept an
injected ``PromptSession`` so tests can drive them with pipe input.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggest, Suggestion
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.styles import Style

from .errors import ReviewError
from .models import CandidateTransaction, Category
from .review import ReviewSession

NO_CATEGORY = "(none)"

HELP_TEXT = """\
Commands:
  l                 list candidates
  t N               toggle selection of N
  a N AMOUNT        set amount
  d N YYYY-MM-DD    set date
  y N income|expense  set type
  c N               choose category
  m N               toggle merge into the existing transaction
  s                 save selected transactions
  q                 cancel without saving
  h                 show this help"""


def _best_prefix_match(words: Sequence[str], text: str) -> str | None:
    if not text:
        return None
    lower = text.lower()
    for w in words:
        if w.lower() == lower:
            return None
        if w.lower().startswith(lower):
            return w
    return None


class _PrefixSuggest(AutoSuggest):
    def __init__(self, vocab: Sequence[str]) -> None:
        self._vocab = list(vocab)

    def get_suggestion(self, buffer, document):
        cand = _best_prefix_match(self._vocab, document.text)
        if cand:
            return Suggestion(cand[len(document.text) :])
        return None


def _child_session(session: PromptSession | None, kb: KeyBindings | None = None) -> PromptSession:
    if session is None:
        return PromptSession(key_bindings=kb)
    return PromptSession(
        input=getattr(session, "input", None),
        output=getattr(session, "output", None),
        key_bindings=kb,
    )


def select_category(
    categories: Sequence[Category],
    *,
    default: str | None = None,
    message: str = "Category (Enter to accept, blank for none): ",
    session: PromptSession | None = None,
) -> str | None:
    """Prompt for a category and return its id, or ``None`` for uncategorized.

    Typing a prefix shows the first matching name inline; Tab or Enter
    accepts it. Unknown names re-prompt.
    """

    names = [c.name for c in categories]
    by_lower = {c.name.lower(): c.id for c in categories}
    words = [*names, NO_CATEGORY]

    kb = KeyBindings()

    @kb.add("tab", eager=True)
    def _(event) -> None:  # pragma: no cover - integration path
        b = event.app.current_buffer
        cand = _best_prefix_match(words, b.document.text)
        if cand:
            b.insert_text(cand[len(b.document.text) :])
        elif b.complete_state is None:
            b.start_completion(select_first=True)
        else:
            b.complete_next()

    @kb.add("enter", eager=True)
    def _(event) -> None:  # pragma: no cover - integration path
        b = event.app.current_buffer
        cs = b.complete_state
        if cs is not None and cs.current_completion is not None:
            b.apply_completion(cs.current_completion)
        else:
            cand = _best_prefix_match(words, b.document.text)
            if cand:
                b.insert_text(cand[len(b.document.text) :])
        b.validate_and_handle()

    sess = _child_session(session, kb)
    default_name = next((c.name for c in categories if c.id == default), "")
    while True:
        answer = sess.prompt(
            message,
            default=default_name,
            completer=WordCompleter(words, ignore_case=True, match_middle=True),
            auto_suggest=_PrefixSuggest(words),
            complete_while_typing=True,
            style=Style.from_dict({"auto-suggestion": "fg:#888888"}),
        ).strip()
        if not answer or answer == NO_CATEGORY:
            return None
        chosen = by_lower.get(answer.lower())
        if chosen is not None:
            return chosen
        # Unknown name; clear the default so the next prompt starts empty.
        default_name = ""


def _flags(session: ReviewSession, cand: CandidateTransaction) -> str:
    if cand.is_intra_duplicate:
        return f"dup of #{cand.duplicate_of_index}"
    if cand.is_existing_duplicate:
        return "exists, merge" if session.overlay(cand.candidate_id).merge else "exists"
    return ""


def format_candidates(session: ReviewSession) -> list[str]:
    names = {c.id: c.name for c in session.categories}
    lines: list[str] = []
    for cand in session.candidates:
        ov = session.overlay(cand.candidate_id)
        mark = "x" if session.is_selected(cand.candidate_id) else " "
        category = names.get(ov.category_id or "", "-")
        flags = _flags(session, cand)
        lines.append(
            f"[{mark}] #{cand.candidate_id:<3} {ov.date.isoformat()} {ov.type.value:<7} "
            f"{ov.amount:>10} {cand.description} ({category})"
            + (f" [{flags}]" if flags else "")
            + f" <{cand.source_label}>"
        )
    return lines


def review_in_terminal(
    session: ReviewSession,
    *,
    prompt_session: PromptSession | None = None,
    print_fn: Callable[[str], None] = print,
) -> bool:
    """Run the review loop; return True on save and False on cancel."""

    sess = prompt_session or PromptSession()

    def _show() -> None:
        for line in format_candidates(session):
            print_fn(line)
        print_fn(f"{len(session.selected)} selected. Type h for help.")

    _show()
    while True:
        raw = sess.prompt("review> ").strip()
        if not raw:
            continue
        cmd, *args = raw.split(maxsplit=2)
        cmd = cmd.lower()
        if cmd in {"s", "save"}:
            return True
        if cmd in {"q", "quit", "cancel"}:
            session.discard()
            return False
        if cmd in {"h", "help", "?"}:
            print_fn(HELP_TEXT)
            continue
        if cmd in {"l", "list"}:
            _show()
            continue
        try:
            if not args:
                raise ReviewError(f"Missing candidate number for '{cmd}'")
            try:
                cid = int(args[0].lstrip("#"))
            except ValueError:
                raise ReviewError(f"Not a candidate number: {args[0]!r}") from None
            value = args[1] if len(args) > 1 else None
            if cmd == "t":
                state = session.toggle(cid)
                print_fn(f"#{cid} {'selected' if state else 'deselected'}")
            elif cmd == "m":
                merge = not session.overlay(cid).merge
                session.set_merge(cid, merge)
                print_fn(f"#{cid} merge {'on' if merge else 'off'}")
            elif cmd == "c":
                session.set_category(
                    cid,
                    select_category(
                        session.categories,
                        default=session.overlay(cid).category_id,
                        session=sess,
                    ),
                )
            elif cmd in {"a", "d", "y"}:
                if value is None:
                    raise ReviewError(f"Missing value for '{cmd}'")
                setter = {"a": session.set_amount, "d": session.set_date, "y": session.set_type}
                setter[cmd](cid, value)
            else:
                print_fn(f"Unknown command: {cmd}. Type h for help.")
        except ReviewError as e:
            print_fn(f"Error: {e.message}")


__all__ = ["format_candidates", "review_in_terminal", "select_category"]
