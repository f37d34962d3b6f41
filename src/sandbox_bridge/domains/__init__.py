from sandbox_bridge.domains.oauth_domain import OAuthFlow, OAuthFlowManager, ResponseLatch

__all__ = [
    "OAuthFlow",
    "OAuthFlowManager",
    "ResponseLatch",
]
