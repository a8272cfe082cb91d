"""Jinja templates for generated project files.

Templates live in ``provision_workflows/templates/*.j2``. Rendering is strict:
a missing variable is an error, never an empty string in a generated file.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from typing import Any

import jinja2

from provision.errors import FatalStepError

_env = jinja2.Environment(
    loader=jinja2.PackageLoader("provision_workflows", "templates"),
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


def render(name: str, **context: Any) -> str:
    """Render a template by file name.

    Raises:
        FatalStepError: If the template is missing or a variable is undefined
    """
    try:
        return _env.get_template(name).render(**context)
    except jinja2.TemplateError as e:
        raise FatalStepError(f"Cannot render template {name}", cause=e) from e
