"""
SeaComm Agent 入口
"""

from seacomm_agent.cli import main

if __name__ == "__main__":
    main()
