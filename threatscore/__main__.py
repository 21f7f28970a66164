from __future__ import annotations


def main() -> int:
    print(
        "threatscore package. Common commands:\n"
        "  python -m threatscore.train --events data/events.ndjson --artifacts artifacts\n"
        "  python -m threatscore.score_file --events data/events.ndjson --db sqlite:///./threatscore.db\n"
        "  python -m threatscore.score_file --events data/events.ndjson --memory --artifacts artifacts\n"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
