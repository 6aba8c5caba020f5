import json
from pathlib import Path

import pytest

import build_notebooks

SCRIPT = """\
# header comment outside any cell

# %% [markdown]
# # Title
#
# Some *text*

# %%
import scanpy as sc

x = 1

# %%

# %% [markdown]
# Done
"""

NOTEBOOK_DIR = Path(__file__).resolve().parents[1] / "integration_colab"


def test_parse_percent_script_cells():
    cells = build_notebooks.parse_percent_script(SCRIPT)

    assert [c["cell_type"] for c in cells] == ["markdown", "code", "markdown"]
    assert cells[0]["source"] == ["# Title\n", "\n", "Some *text*"]
    assert cells[1]["source"] == ["import scanpy as sc\n", "\n", "x = 1"]
    assert cells[1]["outputs"] == [] and cells[1]["execution_count"] is None
    assert "outputs" not in cells[2]


def test_build_notebook_writes_nbformat4(tmp_path):
    script = tmp_path / "1_demo.py"
    script.write_text(SCRIPT, encoding="utf-8")

    path = build_notebooks.build_notebook(script, tmp_path / "out")
    notebook = json.loads(path.read_text(encoding="utf-8"))

    assert path.name == "1_demo.ipynb"
    assert notebook["nbformat"] == 4
    assert notebook["metadata"]["kernelspec"]["name"] == "python3"
    assert len(notebook["cells"]) == 3


def test_build_notebook_without_cells(tmp_path):
    script = tmp_path / "1_empty.py"
    script.write_text("print('no markers')\n", encoding="utf-8")

    with pytest.raises(ValueError, match="No '# %%' cells"):
        build_notebooks.build_notebook(script)


def test_main_builds_tutorial_notebooks(tmp_path):
    paths = build_notebooks.main(NOTEBOOK_DIR, tmp_path)

    assert [p.name for p in paths] == ["1_integration.ipynb", "2_differential_expression.ipynb"]
    for path in paths:
        notebook = json.loads(path.read_text(encoding="utf-8"))
        kinds = {c["cell_type"] for c in notebook["cells"]}
        assert kinds == {"markdown", "code"}


def test_main_with_no_scripts(tmp_path):
    assert build_notebooks.main(tmp_path) == []
