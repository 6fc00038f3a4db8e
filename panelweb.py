"""Entrypoint for the tunnel panel web service."""

from tunnelpanel.main import app, run_server

if __name__ == "__main__":
    run_server()
