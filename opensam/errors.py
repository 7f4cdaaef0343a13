"""Exception taxonomy for the agent core."""


class AgentError(Exception):
    """Base class for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, wrong types, missing model)."""


class OutsideWorkspaceError(AgentError):
    """A path resolved outside the workspace root."""

    def __init__(self, path: str, workspace: str):
        self.path = path
        self.workspace = workspace
        super().__init__(f"path {path!r} is outside workspace {workspace}")


class ToolError(AgentError):
    """Base class for tool dispatch failures."""


class ToolNotFoundError(ToolError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"tool {name!r} not found")


class ToolExecutionError(ToolError):
    """A tool could not run: malformed arguments or an unexpected exception."""

    def __init__(self, name: str, reason):
        self.name = name
        self.reason = reason
        super().__init__(f"tool {name!r} failed: {reason}")


class ProviderError(AgentError):
    """The model collaborator failed. Fatal to the current invocation."""


class RateLimitedError(ProviderError):
    pass


class ApiRejectedError(ProviderError):
    pass


class MalformedResponseError(ProviderError):
    pass


class NoCredentialsError(ProviderError):
    pass


class MaxIterationsError(AgentError):
    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(f"maximum iterations ({max_iterations}) exceeded")
