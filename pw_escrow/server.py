"""
Password Escrow HTTP API

FastAPI front end over one EscrowProtocol. Transactions are built and signed
client-side (passwords and private keys never reach the server); the server
only verifies and executes them.

Endpoints:
    POST /v1/transactions          submit a signed transaction
    GET  /v1/configs/{identity}    read a configuration
    GET  /v1/escrows/{address}     read an escrow record
    GET  /v1/escrows               list escrows (?config=&depositor=&limit=)
    GET  /v1/kdf-params            Argon2id parameters clients must use
    GET  /v1/health                health check
    GET  /metrics                  Prometheus exposition
"""

from __future__ import annotations

import itertools
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import PWE_E_NOT_FOUND, EscrowError, escrow_error
from .kdf import KdfParams
from .ledger import Ledger
from .lockdown import DbCircuitBreaker
from .metrics import metrics_enabled, render_latest
from .protocol import EscrowProtocol
from .settings import Settings, load_settings
from .transaction import Transaction

logger = logging.getLogger("pw_escrow.server")

MAX_LIST_LIMIT = 1000


class TransactionRequest(BaseModel):
    """A signed transaction, as produced by `Transaction.to_dict()`."""
    instruction: str
    args: Dict[str, Any] = Field(default_factory=dict)
    signers: List[str]
    valid_until_utc: str
    nonce: str
    program_id: Optional[str] = None
    signatures: Dict[str, str] = Field(default_factory=dict)


class TransactionResponse(BaseModel):
    tx_id: str
    instruction: str
    result: Dict[str, Any] = Field(default_factory=dict)


def create_app(
    protocol: Optional[EscrowProtocol] = None,
    *,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI application. Without `protocol`, a ledger is opened from settings."""
    from . import __version__ as pwe_version

    settings = settings or load_settings()
    if protocol is None:
        protocol = EscrowProtocol(Ledger(settings.db_path, circuit=DbCircuitBreaker()))
    kdf_params: KdfParams = settings.kdf

    app = FastAPI(
        title="Password Escrow",
        description="Password-claimable token escrow",
        version=pwe_version,
    )
    app.state.protocol = protocol

    @app.exception_handler(EscrowError)
    async def _escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.post("/v1/transactions", response_model=TransactionResponse)
    def submit_transaction(req: TransactionRequest):
        tx = Transaction.from_dict(req.model_dump(exclude_none=True))
        result = protocol.submit(tx)
        return TransactionResponse(tx_id=tx.tx_id, instruction=tx.instruction, result=result)

    @app.get("/v1/configs/{identity}")
    def get_config(identity: str):
        cfg = protocol.get_config(identity)
        if cfg is None:
            raise escrow_error(PWE_E_NOT_FOUND, "config not found", config=identity)
        return cfg.to_dict()

    @app.get("/v1/escrows/{address}")
    def get_escrow(address: str):
        escrow = protocol.get_escrow(address)
        if escrow is None:
            raise escrow_error(PWE_E_NOT_FOUND, "escrow not found", escrow=address)
        return escrow.to_dict()

    @app.get("/v1/escrows")
    def list_escrows(
        config: Optional[str] = None,
        depositor: Optional[str] = None,
        limit: int = Query(100, ge=1, le=MAX_LIST_LIMIT),
    ):
        found = protocol.find_escrows(config=config, depositor=depositor)
        return {"escrows": [e.to_dict() for e in itertools.islice(found, limit)]}

    @app.get("/v1/kdf-params")
    def get_kdf_params():
        return kdf_params.to_dict()

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    if metrics_enabled():
        metrics_token = (os.getenv("PWE_METRICS_TOKEN", "") or "").strip()

        @app.get("/metrics")
        def metrics_endpoint(request: Request):
            if metrics_token:
                authz = (request.headers.get("Authorization") or "").strip()
                if not (authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token):
                    return Response(status_code=403)
            payload, content_type = render_latest()
            return Response(content=payload, media_type=content_type)

    @app.get("/v1/health")
    def health_check():
        """Health check endpoint."""
        storage = protocol.ledger.circuit.state
        return {
            "status": "healthy" if storage == "closed" else storage,
            "version": pwe_version,
            "program_id": protocol.ledger.program_id.hex(),
        }

    return app


def serve(settings: Optional[Settings] = None, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn

    settings = settings or load_settings()
    app = create_app(settings=settings)
    bind_host = host or settings.host
    bind_port = int(port or settings.port)
    logger.info("serving password escrow on %s:%d (db=%s)", bind_host, bind_port, settings.db_path)
    uvicorn.run(app, host=bind_host, port=bind_port)
