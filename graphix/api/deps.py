from __future__ import annotations

from fastapi import Depends, Request

from graphix.services.review_engine import ReviewEngine


async def get_review_engine(request: Request) -> ReviewEngine:
    # lifespan 中创建并挂在 app.state 上
    return request.app.state.review_engine


ReviewEngineDep = Depends(get_review_engine)
