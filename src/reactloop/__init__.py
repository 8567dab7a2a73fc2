"""
reactloop — a ReAct agent execution engine.

    from reactloop.service import AgentService
    service = await AgentService.build(load_settings())
    response = await service.execute_task("list the files in /tmp")
"""

__version__ = "0.1.0"
