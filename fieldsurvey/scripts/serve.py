"""
Start the append-log server that survey sessions post to.
"""

from pydantic_settings import BaseSettings, CliApp
from uvicorn import run

from fieldsurvey.server.app import app


class RunSettings(BaseSettings):
    """
    Settings for running the append-log server.
    """

    host: str = "127.0.0.1"
    port: int = 5000

    class Config:
        env_prefix = "FIELDSURVEY_"

    def cli_cmd(self) -> None:
        run(app, host=self.host, port=self.port)


def main():
    CliApp.run(RunSettings)
