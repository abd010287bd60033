"""
Dependency wiring for the FastAPI app.

The gateway is built once by the app lifespan and stored on ``app.state``;
these helpers hand it (or pieces of it) to route handlers.
"""

from __future__ import annotations

from fastapi import Depends, Request

from tripkit.config import Settings
from tripkit.gateway import Gateway
from tripkit.identity import StaticIdentity, identity_from_headers
from tripkit.sharing import ShareLinkIssuer, ShareViewer


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_identity(request: Request) -> StaticIdentity:
    return identity_from_headers(request.headers)


def get_share_issuer(
    gateway: Gateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
) -> ShareLinkIssuer:
    # Server side there is no clipboard; the client copies the returned URL.
    return ShareLinkIssuer(gateway.records, origin=settings.share_origin)


def get_share_viewer(gateway: Gateway = Depends(get_gateway)) -> ShareViewer:
    return ShareViewer(gateway.records, gateway.blobs)
