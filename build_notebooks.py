#!/usr/bin/env python3
"""
Build Jupyter notebooks from the percent-format scripts in integration_colab/.

Cells are delimited by "# %%" (code) and "# %% [markdown]" (markdown) lines;
markdown cell lines have their leading "# " stripped.

Usage:
    python build_notebooks.py [--source integration_colab] [--output integration_colab]
"""

import argparse
import json
from pathlib import Path

SOURCE_DIR = Path("integration_colab")


def create_cell(cell_type, source, metadata=None):
    """Create a notebook cell"""
    cell = {
        "cell_type": cell_type,
        "metadata": metadata or {},
        "source": source if isinstance(source, list) else [source]
    }
    if cell_type == "code":
        cell["execution_count"] = None
        cell["outputs"] = []
    return cell


def create_notebook_metadata():
    """Standard notebook metadata"""
    return {
        "colab": {"provenance": []},
        "kernelspec": {
            "display_name": "Python 3",
            "language": "python",
            "name": "python3"
        },
        "language_info": {
            "codemirror_mode": {"name": "ipython", "version": 3},
            "file_extension": ".py",
            "mimetype": "text/x-python",
            "name": "python",
            "version": "3.10.0"
        }
    }


def _to_source_lines(lines):
    # Drop leading/trailing blank lines, keep newlines on all but the last line
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return [line + "\n" for line in lines[:-1]] + lines[-1:]


def _strip_markdown_prefix(line):
    if line.startswith("# "):
        return line[2:]
    if line.strip() == "#":
        return ""
    return line


def parse_percent_script(text):
    """Split a percent-format script into notebook cells

    Args:
        text: Script contents

    Returns:
        List of notebook cell dicts (empty cells are dropped)
    """
    cells = []
    cell_type = None
    lines = []

    def flush():
        if cell_type is None:
            return
        if cell_type == "markdown":
            body = [_strip_markdown_prefix(line) for line in lines]
        else:
            body = list(lines)
        body = _to_source_lines(body)
        if body:
            cells.append(create_cell(cell_type, body))

    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# %%"):
            flush()
            cell_type = "markdown" if "[markdown]" in stripped else "code"
            lines = []
        elif cell_type is not None:
            lines.append(line)

    flush()
    return cells


def build_notebook(script_path, output_dir=None):
    """Convert one percent-format script into an .ipynb file

    Args:
        script_path: Path of the .py script
        output_dir: Directory for the notebook (defaults to the script's directory)

    Returns:
        Path of the written notebook
    """
    script_path = Path(script_path)
    output_dir = Path(output_dir) if output_dir is not None else script_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)

    cells = parse_percent_script(script_path.read_text(encoding="utf-8"))
    if not cells:
        raise ValueError(f"No '# %%' cells found in {script_path}")

    notebook = {
        "cells": cells,
        "metadata": create_notebook_metadata(),
        "nbformat": 4,
        "nbformat_minor": 0
    }

    output_path = output_dir / f"{script_path.stem}.ipynb"
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(notebook, f, indent=1, ensure_ascii=False)

    print(f"✓ Created {output_path.name} with {len(cells)} cells")
    return output_path


def main(source_dir=SOURCE_DIR, output_dir=None):
    scripts = sorted(Path(source_dir).glob("[0-9]*_*.py"))
    if not scripts:
        print(f"⚠️  No notebook scripts found in {source_dir}")
        return []

    print("=" * 70)
    print("BUILDING NOTEBOOKS")
    print("=" * 70)
    return [build_notebook(script, output_dir) for script in scripts]


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Build notebooks from percent scripts")
    parser.add_argument("--source", default=str(SOURCE_DIR),
                        help="Directory holding the percent-format scripts")
    parser.add_argument("--output", default=None,
                        help="Directory for the notebooks (default: same as --source)")
    args = parser.parse_args()

    main(args.source, args.output)
