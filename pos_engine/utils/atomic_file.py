from __future__ import annotations
import os, json

__all__ = ["append_jsonl_atomic", "read_jsonl"]


def append_jsonl_atomic(path: str, obj, ensure_ascii: bool = False) -> None:
    """
    Anexa una línea JSON (JSONL). Para append usamos flush+fsync para minimizar riesgo
    de cortes, pero no se hace replace del archivo completo para mantener O(1).
    """
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    line = json.dumps(obj, ensure_ascii=ensure_ascii, default=str)
    with open(path, "a", encoding="utf-8", newline="\n") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def read_jsonl(path: str) -> list:
    """Lee un JSONL; las líneas corruptas (corte a medio escribir) se ignoran."""
    if not os.path.exists(path):
        return []
    out = []
    with open(path, encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            try:
                out.append(json.loads(ln))
            except ValueError:
                continue
    return out
