# Sphinx configuration for tweedie-screen.

import os
import sys

# autodoc imports the package from the source tree
sys.path.insert(0, os.path.abspath("../src"))

project = "tweedie-screen"
copyright = "2025, Stefan Cordes"
author = "Stefan Cordes"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
]

exclude_patterns = ["_build"]
autosummary_generate = True

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "show-inheritance": True,
}
autodoc_typehints = "description"
# the fitted models are documented by statsmodels itself
autodoc_mock_imports = ["statsmodels", "patsy"]

# docstrings are NumPy style throughout
napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_rtype = True
napoleon_attr_annotations = True

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "pandas": ("https://pandas.pydata.org/docs/", None),
    "statsmodels": ("https://www.statsmodels.org/stable/", None),
}

html_theme = "alabaster"
html_theme_options = {
    "description": "Per-feature differential abundance with compound Poisson models",
}
