from __future__ import annotations

from fastapi import Request

from species_gallery.container import AppServices


def get_services(request: Request) -> AppServices:
    return request.app.state.services
