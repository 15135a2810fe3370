"""Runtime diagnostics served under /debug/pprof/."""
import asyncio
import cProfile
import io
import pstats
import sys
import threading
import traceback
import tracemalloc

from fastapi import Query
from starlette.requests import Request
from starlette.responses import PlainTextResponse

PREFIX = "/debug/pprof"
HEAP_TOP = 25

_INDEX = """/debug/pprof/

cmdline  command line of the running program
heap     top memory allocations (tracemalloc; first call starts tracing)
profile  CPU profile of the event loop thread, ?seconds=N (default 30)
tasks    stack traces of all asyncio tasks
threads  stack traces of all threads
"""


async def index(request: Request) -> PlainTextResponse:
    return PlainTextResponse(_INDEX)


async def cmdline(request: Request) -> PlainTextResponse:
    return PlainTextResponse("\x00".join(sys.argv))


async def profile(
    request: Request,
    seconds: float = Query(30.0, gt=0, le=300, description="Sampling duration"),
) -> PlainTextResponse:
    profiler = cProfile.Profile()
    try:
        profiler.enable()
    except ValueError as e:
        # Another profiler is already active on this thread
        return PlainTextResponse(f"profiling unavailable: {e}", status_code=409)
    try:
        await asyncio.sleep(seconds)
    finally:
        profiler.disable()

    out = io.StringIO()
    pstats.Stats(profiler, stream=out).sort_stats(pstats.SortKey.CUMULATIVE).print_stats(50)
    return PlainTextResponse(out.getvalue())


async def tasks(request: Request) -> PlainTextResponse:
    out = io.StringIO()
    all_tasks = asyncio.all_tasks()
    out.write(f"{len(all_tasks)} tasks\n\n")
    for task in all_tasks:
        out.write(f"{task!r}\n")
        task.print_stack(file=out)
        out.write("\n")
    return PlainTextResponse(out.getvalue())


async def threads(request: Request) -> PlainTextResponse:
    names = {t.ident: t.name for t in threading.enumerate()}
    out = io.StringIO()
    for ident, frame in sys._current_frames().items():
        out.write(f"thread {names.get(ident, '?')} ({ident})\n")
        out.write("".join(traceback.format_stack(frame)))
        out.write("\n")
    return PlainTextResponse(out.getvalue())


async def heap(request: Request) -> PlainTextResponse:
    if not tracemalloc.is_tracing():
        tracemalloc.start()
        return PlainTextResponse("tracemalloc started; request again for allocation statistics\n")

    snapshot = tracemalloc.take_snapshot()
    stats = snapshot.statistics("lineno")[:HEAP_TOP]
    current, peak = tracemalloc.get_traced_memory()
    lines = [f"current={current} peak={peak}", ""]
    lines.extend(str(stat) for stat in stats)
    return PlainTextResponse("\n".join(lines) + "\n")


ROUTES = {
    f"{PREFIX}/": index,
    f"{PREFIX}/cmdline": cmdline,
    f"{PREFIX}/profile": profile,
    f"{PREFIX}/tasks": tasks,
    f"{PREFIX}/threads": threads,
    f"{PREFIX}/heap": heap,
}
