from __future__ import annotations

import argparse
import json
import math
from pathlib import Path

from .app import create_form_runtime_app
from .models import parse_fields
from .session import DEFAULT_MAX_PASSES, FormSession


def _encode_number(value: object) -> object:
    if isinstance(value, float) and math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


def evaluate_file(path: Path, max_passes: int) -> dict[str, object]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    fields = parse_fields(payload.get("fields"))
    form_data = dict(payload.get("form_data") or {})
    settled = FormSession(fields, form_data).settle(max_passes=max_passes)
    return {
        "field_states": {field_id: state.to_dict() for field_id, state in settled.field_states.items()},
        "calculated_values": {key: _encode_number(value) for key, value in settled.calculated_values.items()},
        "form_data": {key: _encode_number(value) for key, value in form_data.items()},
        "passes": settled.passes,
        "converged": settled.converged,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the dynamic form runtime")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="serve the evaluation API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    evaluate = subparsers.add_parser("evaluate", help="settle a form definition and print its state")
    evaluate.add_argument("path", type=Path)
    evaluate.add_argument("--max-passes", type=int, default=DEFAULT_MAX_PASSES)
    args = parser.parse_args()

    if args.command == "serve":
        app = create_form_runtime_app()
        app.run(host=args.host, port=args.port, debug=False)
        return

    print(json.dumps(evaluate_file(args.path, args.max_passes), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
