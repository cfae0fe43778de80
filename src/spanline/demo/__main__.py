"""Run the demo service: ``python -m spanline.demo``."""

from __future__ import annotations

import os

import uvicorn

from spanline.core.config import TracingConfig
from spanline.demo.app import create_app
from spanline.tracing.tracer import Tracer
from spanline.utils.logging import configure_from_config


def main() -> None:
    config = TracingConfig.from_env()
    tracer = Tracer(config=config)
    configure_from_config(config, stack=tracer.stack)
    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run(create_app(tracer), host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    main()
