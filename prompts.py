"""Instruction text sent to the remote browser agent."""
from __future__ import annotations

from typing import Iterable, Optional

from test_types import Credential


def format_credential(credential: Credential) -> str:
    """Render one credential line, annotated with its description when present."""
    label = f"Credentials ({credential.description})" if credential.description else "Credentials"
    return f'{label}: username="{credential.username}", password="{credential.password}"'


def compose_prompt(
    prompt: str,
    base_url: Optional[str] = None,
    setup_prompt: Optional[str] = None,
    credentials: Iterable[Credential] = (),
    expected_result: Optional[str] = None,
) -> str:
    """
    Build the full task instruction for one test.

    Sections, in order and separated by a blank line:
    1. navigation to the project's base URL
    2. project setup steps
    3. the test prompt itself
    4. one line per credential
    5. the expected result

    Missing optional parts are left out, so a bare prompt comes back unchanged.
    """
    sections = []
    if base_url:
        sections.append(f"Navigate to {base_url}")
    if setup_prompt:
        sections.append(setup_prompt)
    sections.append(prompt)

    credential_lines = [format_credential(c) for c in credentials]
    if credential_lines:
        sections.append("\n".join(credential_lines))

    if expected_result:
        sections.append(f"Expected result: {expected_result}")

    return "\n\n".join(sections)
