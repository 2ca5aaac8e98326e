"""Write the OpenAPI schema of the billing API to stdout or a file.

    python scripts/generate_openapi.py > openapi.json
    python scripts/generate_openapi.py --output openapi.json
"""

import argparse
import json
import sys

from duka_billing.main import app


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--output", "-o", help="file to write instead of stdout")
    args = parser.parse_args(argv)

    schema = json.dumps(app.openapi(), indent=2, sort_keys=True)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            fh.write(schema + "\n")
    else:
        print(schema)
    return 0


if __name__ == "__main__":
    sys.exit(main())
