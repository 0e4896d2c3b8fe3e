import asyncio

import numpy as np
import pytest

from voice_session.domain.capture import (
    CapturePipeline,
    FrameBuffer,
    FrameSender,
    make_frame,
)
from voice_session.domain.codec import decode, pcm_int16_to_float
from voice_session.domain.errors import ChannelError
from voice_session.domain.level_meter import LevelMeter

from tests.conftest import (
    BUFFER_SIZE,
    INPUT_SAMPLE_RATE,
    FakeCaptureDevice,
    FakeChannel,
    generate_sine_block,
    settle,
)


class TestFrameBuffer:
    def test_exact_block_passes_through(self):
        framer = FrameBuffer(BUFFER_SIZE)
        frames = framer.push(generate_sine_block(BUFFER_SIZE))
        assert len(frames) == 1
        assert framer.pending == 0

    def test_partial_blocks_accumulate(self):
        framer = FrameBuffer(BUFFER_SIZE)
        assert framer.push(generate_sine_block(1000)) == []
        frames = framer.push(generate_sine_block(BUFFER_SIZE - 1000))
        assert len(frames) == 1
        assert len(frames[0]) == BUFFER_SIZE

    def test_large_block_splits(self):
        framer = FrameBuffer(BUFFER_SIZE)
        frames = framer.push(generate_sine_block(10000))
        assert len(frames) == 2
        assert framer.pending == 10000 - 2 * BUFFER_SIZE

    def test_clear(self):
        framer = FrameBuffer(BUFFER_SIZE)
        framer.push(generate_sine_block(100))
        framer.clear()
        assert framer.pending == 0

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            FrameBuffer(0)


class TestMakeFrame:
    def test_frame_is_tagged_with_input_rate(self):
        frame = make_frame(generate_sine_block(), INPUT_SAMPLE_RATE)
        assert frame.mime_type == "audio/pcm;rate=16000"
        assert frame.sample_rate == INPUT_SAMPLE_RATE
        assert frame.num_samples == BUFFER_SIZE

    def test_encoded_data_decodes_to_pcm(self):
        block = generate_sine_block()
        frame = make_frame(block, INPUT_SAMPLE_RATE)
        pcm = np.frombuffer(decode(frame.data), dtype="<i2")
        assert np.array_equal(pcm, frame.samples)
        restored = pcm_int16_to_float(pcm)
        assert np.max(np.abs(restored - block)) <= 1.0 / 32768 + 1e-7

    def test_samples_are_immutable(self):
        frame = make_frame(generate_sine_block(), INPUT_SAMPLE_RATE)
        with pytest.raises(ValueError):
            frame.samples[0] = 1


class TestCapturePipeline:
    def _pipeline(self, sent, allowed=lambda: True, level_meter=None):
        return CapturePipeline(
            capture=FakeCaptureDevice(),
            send=sent.append,
            can_send=allowed,
            buffer_size=BUFFER_SIZE,
            sample_rate=INPUT_SAMPLE_RATE,
            level_meter=level_meter,
        )

    def test_one_frame_per_buffer_full(self):
        sent = []
        pipeline = self._pipeline(sent)
        for _ in range(5):
            pipeline.process_block(generate_sine_block())
        assert len(sent) == 5
        assert pipeline.frames_sent == 5

    def test_frames_scaled_to_int16(self):
        sent = []
        pipeline = self._pipeline(sent)
        block = generate_sine_block(amplitude=0.5)
        pipeline.process_block(block)
        assert sent[0].samples.dtype == np.int16
        assert np.max(np.abs(sent[0].samples)) == pytest.approx(0.5 * 32768, abs=2)

    def test_gate_closed_sends_nothing(self):
        sent = []
        meter = LevelMeter(2048)
        pipeline = self._pipeline(sent, allowed=lambda: False, level_meter=meter)
        pipeline.process_block(generate_sine_block())
        assert sent == []
        assert meter.rms > 0

    def test_partial_block_from_closed_gate_is_discarded(self):
        sent = []
        allowed = [False]
        pipeline = self._pipeline(sent, allowed=lambda: allowed[0])

        pipeline.process_block(generate_sine_block(1000))
        allowed[0] = True
        pipeline.process_block(generate_sine_block(BUFFER_SIZE - 1000))
        assert sent == []

        pipeline.process_block(generate_sine_block(1000))
        assert len(sent) == 1

    @pytest.mark.asyncio
    async def test_run_consumes_device_blocks(self):
        sent = []
        device = FakeCaptureDevice()
        pipeline = CapturePipeline(device, sent.append, lambda: True, BUFFER_SIZE, INPUT_SAMPLE_RATE)
        for _ in range(3):
            device.feed(generate_sine_block())
        device.end_stream()
        await pipeline.run()
        assert len(sent) == 3


class TestFrameSender:
    @pytest.mark.asyncio
    async def test_sends_in_submission_order(self):
        channel = FakeChannel()
        sender = FrameSender(channel, max_queue=8)
        frames = [make_frame(generate_sine_block(amplitude=0.1 * i), INPUT_SAMPLE_RATE) for i in range(3)]
        for frame in frames:
            sender.submit(frame)

        task = asyncio.create_task(sender.run())
        await settle()
        task.cancel()

        assert channel.sent == frames
        assert sender.sent_count == 3

    def test_full_queue_drops_oldest(self):
        sender = FrameSender(FakeChannel(), max_queue=2)
        frames = [make_frame(generate_sine_block(), INPUT_SAMPLE_RATE) for _ in range(3)]
        for frame in frames:
            sender.submit(frame)
        assert sender.queued == 2
        assert sender.dropped_count == 1

    @pytest.mark.asyncio
    async def test_send_failure_raises_channel_error(self):
        sender = FrameSender(FakeChannel(send_error=ConnectionResetError("reset")), max_queue=2)
        sender.submit(make_frame(generate_sine_block(), INPUT_SAMPLE_RATE))
        with pytest.raises(ChannelError):
            await asyncio.wait_for(sender.run(), timeout=1.0)

    def test_clear(self):
        sender = FrameSender(FakeChannel(), max_queue=4)
        sender.submit(make_frame(generate_sine_block(), INPUT_SAMPLE_RATE))
        sender.clear()
        assert sender.queued == 0
