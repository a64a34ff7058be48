# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
from reliaprompt.prompt.improvement import (
    IMPROVER_SYSTEM_PROMPT, MAX_FAILED_CASES, build_improvement_prompt,
)

__all__ = ["IMPROVER_SYSTEM_PROMPT", "MAX_FAILED_CASES", "build_improvement_prompt"]
