"""Bidirectional stream binding utilities."""

import asyncio


async def bind_reader_writer(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    chunk_size: int = 65536,
) -> int:
    """
    Pipe data from reader to writer until EOF, then half-close the writer.

    Args:
        reader: AsyncIO stream reader.
        writer: AsyncIO stream writer.
        chunk_size: Maximum bytes per read.

    Returns:
        Number of bytes forwarded.

    Raises:
        OSError: Either side failed.
    """
    total = 0
    while True:
        data = await reader.read(chunk_size)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        total += len(data)

    if writer.can_write_eof() and not writer.is_closing():
        try:
            writer.write_eof()
        except OSError:
            pass
    return total


async def splice(
    local_reader: asyncio.StreamReader,
    local_writer: asyncio.StreamWriter,
    remote_reader: asyncio.StreamReader,
    remote_writer: asyncio.StreamWriter,
    chunk_size: int = 65536,
) -> BaseException | None:
    """
    Forward bytes both ways until the remote side is done.

    The local side ending only half-closes the remote; the connection ends
    when the remote side finishes sending. Both writers are closed on return.

    Returns:
        The first error raised by either direction, or None.
    """
    upstream = asyncio.create_task(
        bind_reader_writer(local_reader, remote_writer, chunk_size)
    )
    downstream = asyncio.create_task(
        bind_reader_writer(remote_reader, local_writer, chunk_size)
    )
    error: BaseException | None = None

    try:
        done, _ = await asyncio.wait(
            {upstream, downstream}, return_when=asyncio.FIRST_COMPLETED
        )
        if upstream in done and upstream.exception() is None:
            # Local EOF forwarded; let the remote finish its response
            await asyncio.wait({downstream})
    finally:
        for task in (upstream, downstream):
            if not task.done():
                task.cancel()
        results = await asyncio.gather(upstream, downstream, return_exceptions=True)
        for result in results:
            if isinstance(result, OSError) and error is None:
                error = result
        for writer in (local_writer, remote_writer):
            writer.close()
        for writer in (local_writer, remote_writer):
            try:
                await writer.wait_closed()
            except OSError:
                pass

    return error
