# main.py
import sys

from autocheckin.app_orchestrator import AppOrchestrator

def run_application():
    """
    创建并运行应用编排器。
    """
    orchestrator = AppOrchestrator()
    exit_code = orchestrator.run()
    sys.exit(exit_code)

if __name__ == "__main__":
    run_application()
