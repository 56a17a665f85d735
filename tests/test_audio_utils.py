from __future__ import annotations

import io
import os
import struct

import pytest
import soundfile as sf

from conftest import FakeEncoder, FakeLogger

from orchestrator.audio_utils import (
    AudioAssembler,
    build_wav_header,
    collect_fragment,
    detect_container,
    estimate_duration,
    estimate_narration_seconds,
    normalize_fragment,
    parse_audio_mime,
    synthesize_placeholder,
)
from orchestrator.models import AudioFragment, SpeechChunk


def test_parse_audio_mime_defaults_and_params():
    fmt = parse_audio_mime("audio/L16;codec=pcm;rate=16000")
    assert (fmt.channels, fmt.sample_rate, fmt.bits_per_sample) == (1, 16000, 16)
    fmt = parse_audio_mime("audio/L24; rate=48000; channels=2")
    assert (fmt.channels, fmt.sample_rate, fmt.bits_per_sample) == (2, 48000, 24)
    fmt = parse_audio_mime("")
    assert (fmt.channels, fmt.sample_rate, fmt.bits_per_sample) == (1, 24000, 16)
    assert parse_audio_mime("audio/L8").bits_per_sample == 8


def test_wav_header_is_canonical():
    fmt = parse_audio_mime("audio/L16;rate=24000")
    header = build_wav_header(4800, fmt)
    assert len(header) == 44
    fields = struct.unpack("<4sI4s4sIHHIIHH4sI", header)
    assert fields[0] == b"RIFF" and fields[2] == b"WAVE" and fields[11] == b"data"
    assert fields[1] == 36 + 4800
    assert fields[6] == 1  # channels
    assert fields[7] == 24000
    assert fields[8] == 48000  # byte rate
    assert fields[12] == 4800


def test_detect_container_by_magic_bytes():
    assert detect_container(b"RIFF\x00\x00\x00\x00WAVEfmt ") == "wav"
    assert detect_container(b"ID3\x04\x00") == "mp3"
    assert detect_container(b"\xff\xfb\x90\x00") == "mp3"
    assert detect_container(b"fLaC\x00") == "flac"
    assert detect_container(b"OggS\x00") == "ogg"
    assert detect_container(b"\x01\x02\x03\x04") is None


def test_headerless_pcm_gets_wav_header_and_decodes():
    pcm = b"\x00\x00" * 24000
    fragment = AudioFragment(0, pcm, "audio/L16;rate=24000")
    data, suffix = normalize_fragment(fragment)
    assert suffix == ".wav"
    assert data[44:] == pcm
    info = sf.info(io.BytesIO(data))
    assert info.samplerate == 24000
    assert info.duration == pytest.approx(1.0)


def test_collect_fragment_drops_repeats_and_slivers(config):
    a = b"\x01\x02" * 2400
    b = b"\x03\x04" * 1200
    chunks = [
        SpeechChunk(a, "audio/L16;rate=24000"),
        SpeechChunk(a, "audio/L16;rate=24000"),
        SpeechChunk(b"\x00" * 10, "audio/L16;rate=24000"),
        SpeechChunk(b, "audio/L16;rate=24000"),
        SpeechChunk(a, "audio/L16;rate=24000"),
    ]
    fragment = collect_fragment(3, iter(chunks), config)
    assert fragment.scene_index == 3
    assert fragment.raw_bytes == a + b
    assert fragment.mime_type == "audio/L16;rate=24000"
    assert fragment.estimated_duration_seconds == config.min_fragment_duration_sec


def test_collect_fragment_rejects_empty_stream(config):
    with pytest.raises(ValueError):
        collect_fragment(0, iter([SpeechChunk(b"\x00", "audio/L16")]), config)


def test_estimate_duration_uses_byte_rate_and_floor(config):
    ten_seconds = b"\x00\x00" * 24000 * 10
    assert estimate_duration(ten_seconds, "audio/L16;rate=24000", config) == pytest.approx(10.0)
    assert estimate_duration(b"\x00" * 100, "audio/L16;rate=24000", config) == 5.0
    compressed = b"\x00" * (16000 * 20)
    assert estimate_duration(compressed, "audio/mpeg", config) == pytest.approx(20.0)


def test_placeholder_is_silent_wav_of_requested_length():
    fragment = synthesize_placeholder(2, 3.0, sample_rate=16000)
    assert fragment.placeholder
    assert fragment.scene_index == 2
    assert detect_container(fragment.raw_bytes) == "wav"
    info = sf.info(io.BytesIO(fragment.raw_bytes))
    assert info.duration == pytest.approx(3.0)
    assert fragment.estimated_duration_seconds == pytest.approx(3.0)


def test_narration_estimate_is_clamped():
    assert estimate_narration_seconds("one two three") == 30.0
    assert estimate_narration_seconds(" ".join(["w"] * 150)) == pytest.approx(60.0)
    assert estimate_narration_seconds(" ".join(["w"] * 1000)) == 90.0


def test_single_fragment_is_reencoded_directly(config):
    encoder = FakeEncoder()
    wav = synthesize_placeholder(0, 1.0).raw_bytes
    fragment = AudioFragment(0, wav, "audio/wav", estimated_duration_seconds=42.0)
    out = os.path.join(config.audio_dir, "story_1.mp3")
    audio = AudioAssembler(config, encoder).assemble([fragment], out)
    assert audio.ok
    assert len(encoder.encoded) == 1 and encoder.concatenated == []
    assert encoder.seen_inputs == [wav]
    assert audio.segment_count == 1
    assert audio.duration_seconds == pytest.approx(42.0)
    assert audio.audio_path == out and os.path.isfile(out)
    assert audio.size_bytes == os.path.getsize(out)
    assert not audio.placeholder


def test_ten_sixty_second_fragments_make_ten_minutes(config):
    encoder = FakeEncoder()
    fragments = [
        AudioFragment(i, b"\x00\x00" * 500, "audio/L16;rate=24000", estimated_duration_seconds=60.0)
        for i in reversed(range(10))
    ]
    audio = AudioAssembler(config, encoder).assemble(fragments, os.path.join(config.audio_dir, "s.mp3"))
    assert audio.ok
    assert audio.segment_count == 10
    assert audio.duration_seconds == pytest.approx(600.0, rel=0.1)
    inputs = encoder.concatenated[0]
    assert [d for _p, d in inputs] == [60.0] * 10
    assert [os.path.basename(p) for p, _d in inputs] == [f"scene_{i:02d}.wav" for i in range(10)]


def test_probed_duration_wins_when_available(config):
    encoder = FakeEncoder(probe=123.4)
    fragments = [AudioFragment(i, b"\x00" * 200, "audio/L16", 60.0) for i in range(2)]
    audio = AudioAssembler(config, encoder).assemble(fragments, os.path.join(config.audio_dir, "p.mp3"))
    assert audio.duration_seconds == pytest.approx(123.4)


def test_undersized_output_is_an_error(config):
    encoder = FakeEncoder(output_size=40 * 1024)
    fragments = [AudioFragment(i, b"\x00" * 200, "audio/L16", 60.0) for i in range(3)]
    audio = AudioAssembler(config, encoder).assemble(fragments, os.path.join(config.audio_dir, "u.mp3"))
    assert not audio.ok
    assert "assembly produced undersized output" in audio.error
    assert audio.binary_data == b""


def test_encoder_failure_becomes_audio_error(config):
    logger = FakeLogger()
    encoder = FakeEncoder(fail=True)
    fragments = [AudioFragment(i, b"\x00" * 200, "audio/L16", 60.0) for i in range(2)]
    audio = AudioAssembler(config, encoder, log=logger.log).assemble(fragments, os.path.join(config.audio_dir, "f.mp3"))
    assert audio.error.startswith("MediaEncodingError: ")
    assert any("audio_assembly_failed" in line for line in logger.logged)


def test_no_fragments_is_an_error(config):
    audio = AudioAssembler(config, FakeEncoder()).assemble([], os.path.join(config.audio_dir, "n.mp3"))
    assert not audio.ok


def test_temp_fragments_are_removed(config):
    fragments = [AudioFragment(i, b"\x00" * 200, "audio/L16", 10.0) for i in range(3)]
    AudioAssembler(config, FakeEncoder()).assemble(fragments, os.path.join(config.audio_dir, "t.mp3"))
    assert os.listdir(config.temp_dir) == []


def test_placeholder_segments_are_counted(config):
    fragments = [synthesize_placeholder(0, 1.0), AudioFragment(1, b"\x00" * 200, "audio/L16", 10.0)]
    audio = AudioAssembler(config, FakeEncoder()).assemble(fragments, os.path.join(config.audio_dir, "m.mp3"))
    assert audio.placeholder
    assert audio.placeholder_segments == 1
