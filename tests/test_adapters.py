"""Request building and stream normalization per vendor."""

import json
from types import SimpleNamespace as NS

from openai.types.chat import ChatCompletionChunk

from llm_relay.adapters import (
    AnthropicRequestAdapter,
    AnthropicStreamNormalizer,
    GeminiRequestAdapter,
    OllamaRequestAdapter,
    OllamaStreamNormalizer,
    OpenAIRequestAdapter,
    OpenAIStreamNormalizer,
)
from llm_relay.types import (
    AssistantMessage,
    ChatRequest,
    SystemMessage,
    ToolCall,
    ToolCallDelta,
    ToolInfo,
    ToolMessage,
    Usage,
    UserMessage,
)

READ_FILE = ToolInfo(
    "files_read_file",
    "Read a file",
    {"$schema": "x", "type": "object", "properties": {"n": {"type": "integer", "format": "uint32"}}},
)


def tool_round_history():
    call = ToolCall(id="call_1", name="files_read_file", arguments={"path": "a.txt"})
    return [
        UserMessage("read a.txt"),
        AssistantMessage(content="Reading.", tool_calls=(call,)),
        ToolMessage(tool_call_id="call_1", content={"text": "hi"}, name="files_read_file"),
    ]


def openai_chunk(delta=None, usage=None):
    fields = {"content": None, "tool_calls": None, **(delta or {})}
    choices = [NS(delta=NS(**fields))] if delta is not None else []
    return NS(choices=choices, usage=usage)


class TestOpenAIRequestAdapter:
    def test_to_provider_basic(self):
        request = ChatRequest(
            model="gpt-4.1-mini",
            messages=[UserMessage("hi")],
            system="be brief",
            params={"temperature": 0.2},
        )

        args = OpenAIRequestAdapter().to_provider(request)

        assert args["model"] == "gpt-4.1-mini"
        assert args["stream"] is True
        assert args["stream_options"] == {"include_usage": True}
        assert args["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]
        assert args["temperature"] == 0.2
        assert "tools" not in args

    def test_tool_round_messages(self):
        request = ChatRequest(model="gpt-4.1", messages=tool_round_history(), tools=[READ_FILE])

        args = OpenAIRequestAdapter().to_provider(request)
        assistant, tool = args["messages"][1], args["messages"][2]

        assert assistant["content"] == "Reading."
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {"path": "a.txt"}
        assert tool == {"role": "tool", "tool_call_id": "call_1", "content": '{"text": "hi"}'}

    def test_tools_use_sanitized_schema(self):
        request = ChatRequest(model="gpt-4.1", messages=[UserMessage("x")], tools=[READ_FILE])

        tool = OpenAIRequestAdapter().to_provider(request)["tools"][0]

        assert tool["type"] == "function"
        assert tool["function"]["name"] == "files_read_file"
        assert "$schema" not in tool["function"]["parameters"]
        assert tool["function"]["parameters"]["properties"]["n"]["format"] == "int32"

    def test_unparsed_arguments_replayed_verbatim(self):
        call = ToolCall(id="c", name="t", parse_error="bad", raw_arguments='{"a":')
        msg = OpenAIRequestAdapter().build_message(AssistantMessage(tool_calls=(call,)))

        assert msg["content"] is None
        assert msg["tool_calls"][0]["function"]["arguments"] == '{"a":'

    def test_empty_assistant_gets_empty_content(self):
        msg = OpenAIRequestAdapter().build_message(AssistantMessage())

        assert msg == {"role": "assistant", "content": ""}

    def test_reasoning_echo_is_opt_in(self):
        message = AssistantMessage(content="4", thinking="2+2")

        assert "reasoning_content" not in OpenAIRequestAdapter().build_message(message)
        echoed = OpenAIRequestAdapter(send_reasoning=True).build_message(message)
        assert echoed["reasoning_content"] == "2+2"

    def test_reasoning_models_use_max_completion_tokens(self):
        adapter = OpenAIRequestAdapter()

        assert adapter.build_params({"max_tokens": 50}, "o3-mini") == {"max_completion_tokens": 50}
        assert adapter.build_params({"max_tokens": 50}, "gpt-4.1") == {"max_tokens": 50}

    def test_passthrough_extras_go_to_extra_body(self):
        params = OpenAIRequestAdapter().build_params(
            {"reasoning_effort": "low", "verbosity": "high", "logprobs": True, "top_p": None},
            "gpt-5",
        )

        assert params["extra_body"] == {"reasoning_effort": "low", "verbosity": "high"}
        assert params["logprobs"] is True
        assert "top_p" not in params


class TestOpenAIStreamNormalizer:
    def test_content_and_reasoning(self):
        normalizer = OpenAIStreamNormalizer()

        chunk = normalizer.feed(openai_chunk({"content": "Hel", "reasoning_content": "hmm"}))

        assert chunk.content == "Hel"
        assert chunk.thinking == "hmm"

    def test_reasoning_field_fallback(self):
        chunk = OpenAIStreamNormalizer().feed(openai_chunk({"reasoning": "thinking"}))

        assert chunk.thinking == "thinking"
        assert chunk.content is None

    def test_tool_call_fragments(self):
        normalizer = OpenAIStreamNormalizer()
        first = NS(index=0, id="call_a", function=NS(name="f", arguments='{"x"'))
        second = NS(index=0, id=None, function=NS(name=None, arguments=": 1}"))

        a = normalizer.feed(openai_chunk({"tool_calls": [first]}))
        b = normalizer.feed(openai_chunk({"tool_calls": [second]}))

        assert a.tool_calls == (ToolCallDelta(0, "call_a", "f", '{"x"'),)
        assert b.tool_calls == (ToolCallDelta(0, None, None, ": 1}"),)

    def test_missing_index_gets_next_free_index(self):
        normalizer = OpenAIStreamNormalizer()
        calls = [
            NS(index=None, id=None, function=NS(name="a", arguments="{}")),
            NS(index=None, id=None, function=NS(name="b", arguments="{}")),
        ]

        chunk = normalizer.feed(openai_chunk({"tool_calls": calls}))

        assert [d.index for d in chunk.tool_calls] == [0, 1]
        assert all(d.id is None for d in chunk.tool_calls)

    def test_usage_held_until_finish(self):
        normalizer = OpenAIStreamNormalizer()
        usage = NS(prompt_tokens=12, completion_tokens=3)

        assert normalizer.feed(openai_chunk(usage=usage)) is None
        assert normalizer.finish().usage == Usage(12, 3)

    def test_no_usage_no_final_chunk(self):
        normalizer = OpenAIStreamNormalizer()
        normalizer.feed(openai_chunk({"content": "x"}))

        assert normalizer.finish() is None

    def test_sdk_chunk_model(self):
        raw = ChatCompletionChunk.model_validate(
            {
                "id": "chatcmpl-1",
                "object": "chat.completion.chunk",
                "created": 0,
                "model": "gpt-4.1",
                "choices": [
                    {
                        "index": 0,
                        "finish_reason": None,
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "files_read_file", "arguments": ""},
                                }
                            ]
                        },
                    }
                ],
            }
        )

        chunk = OpenAIStreamNormalizer().feed(raw)

        assert chunk.tool_calls == (ToolCallDelta(0, "call_1", "files_read_file", None),)


class TestGeminiRequestAdapter:
    def test_unsupported_params_dropped(self):
        params = GeminiRequestAdapter().build_params(
            {
                "temperature": 0.3,
                "parallel_tool_calls": False,
                "frequency_penalty": 0.1,
                "presence_penalty": 0.1,
                "user": "u",
            },
            "gemini-2.5-flash",
        )

        assert params == {"temperature": 0.3}

    def test_never_uses_max_completion_tokens(self):
        params = GeminiRequestAdapter().build_params({"max_tokens": 10}, "o1-lookalike")

        assert params == {"max_tokens": 10}


class TestAnthropicRequestAdapter:
    def test_system_and_tool_round(self):
        history = [SystemMessage("extra rules")] + tool_round_history()
        request = ChatRequest(
            model="claude-sonnet-4", messages=history, system="be brief", tools=[READ_FILE]
        )

        args = AnthropicRequestAdapter().to_provider(request)

        assert args["system"] == "be brief\nextra rules"
        assert args["max_tokens"] == 4096
        assert args["messages"][0] == {"role": "user", "content": "read a.txt"}
        assert args["messages"][1]["content"] == [
            {"type": "text", "text": "Reading."},
            {"type": "tool_use", "id": "call_1", "name": "files_read_file", "input": {"path": "a.txt"}},
        ]
        assert args["messages"][2] == {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "call_1", "content": '{"text": "hi"}'}
            ],
        }
        assert args["tools"][0]["input_schema"]["properties"]["n"]["format"] == "int32"

    def test_consecutive_results_share_one_user_message(self):
        calls = (ToolCall("a", "t"), ToolCall("b", "t"))
        history = [
            UserMessage("go"),
            AssistantMessage(tool_calls=calls),
            ToolMessage("a", "one", name="t"),
            ToolMessage("b", {"error": "timeout"}, name="t", is_error=True),
        ]

        args = AnthropicRequestAdapter().to_provider(ChatRequest(model="m", messages=history))
        results = args["messages"][2]["content"]

        assert len(args["messages"]) == 3
        assert [r["tool_use_id"] for r in results] == ["a", "b"]
        assert results[1]["is_error"] is True
        assert "is_error" not in results[0]

    def test_params_mapping(self):
        params = AnthropicRequestAdapter().build_params(
            {
                "max_tokens": 100,
                "stop": "END",
                "tool_choice": "required",
                "parallel_tool_calls": False,
                "user": "u-1",
                "seed": 7,
            }
        )

        assert params == {
            "max_tokens": 100,
            "stop_sequences": ["END"],
            "tool_choice": {"type": "any", "disable_parallel_tool_use": True},
            "metadata": {"user_id": "u-1"},
        }

    def test_named_tool_choice(self):
        params = AnthropicRequestAdapter().build_params({"tool_choice": "files_read_file"})

        assert params["tool_choice"] == {"type": "tool", "name": "files_read_file"}


class TestAnthropicStreamNormalizer:
    def events(self):
        return [
            NS(type="message_start", message=NS(usage=NS(input_tokens=20))),
            NS(type="content_block_start", index=0, content_block=NS(type="thinking", thinking="")),
            NS(type="content_block_delta", index=0, delta=NS(type="thinking_delta", thinking="hm")),
            NS(type="content_block_start", index=1, content_block=NS(type="text", text="")),
            NS(type="content_block_delta", index=1, delta=NS(type="text_delta", text="Reading")),
            NS(type="text", text="Reading"),
            NS(
                type="content_block_start",
                index=2,
                content_block=NS(type="tool_use", id="toolu_1", name="files_read_file"),
            ),
            NS(
                type="content_block_delta",
                index=2,
                delta=NS(type="input_json_delta", partial_json='{"path":'),
            ),
            NS(
                type="content_block_delta",
                index=2,
                delta=NS(type="input_json_delta", partial_json='"a.txt"}'),
            ),
            NS(type="message_delta", usage=NS(output_tokens=9)),
            NS(type="message_stop"),
        ]

    def test_event_translation(self):
        normalizer = AnthropicStreamNormalizer()
        chunks = [c for c in map(normalizer.feed, self.events()) if c is not None]

        assert [c.thinking for c in chunks if c.thinking] == ["hm"]
        assert [c.content for c in chunks if c.content] == ["Reading"]
        deltas = [d for c in chunks for d in c.tool_calls]
        assert deltas == [
            ToolCallDelta(2, "toolu_1", "files_read_file", None),
            ToolCallDelta(2, None, None, '{"path":'),
            ToolCallDelta(2, None, None, '"a.txt"}'),
        ]
        assert all(c.usage is None for c in chunks)
        assert normalizer.finish().usage == Usage(20, 9)


class TestOllamaAdapter:
    def test_request_messages(self):
        request = ChatRequest(
            model="qwen3:8b",
            messages=tool_round_history(),
            system="be brief",
            tools=[READ_FILE],
            params={"max_tokens": 64, "temperature": 0, "think": True, "num_ctx": 8192},
        )

        args = OllamaRequestAdapter().to_provider(request)

        assert args["stream"] is True
        assert args["messages"][0] == {"role": "system", "content": "be brief"}
        assert args["messages"][2]["tool_calls"] == [
            {"function": {"name": "files_read_file", "arguments": {"path": "a.txt"}}}
        ]
        assert args["messages"][3] == {
            "role": "tool",
            "content": '{"text": "hi"}',
            "tool_name": "files_read_file",
        }
        assert args["think"] is True
        assert args["options"] == {"num_predict": 64, "temperature": 0, "num_ctx": 8192}
        assert args["tools"][0]["function"]["parameters"]["properties"]["n"]["format"] == "int32"

    def test_whole_tool_calls_become_single_fragments(self):
        normalizer = OllamaStreamNormalizer()
        raw = {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"function": {"name": "a", "arguments": {"x": 1}}},
                    {"function": {"name": "b", "arguments": {}}},
                ],
            },
            "done": False,
        }

        chunk = normalizer.feed(raw)

        assert chunk.tool_calls == (
            ToolCallDelta(0, None, "a", '{"x": 1}'),
            ToolCallDelta(1, None, "b", "{}"),
        )

    def test_thinking_content_and_usage(self):
        normalizer = OllamaStreamNormalizer()

        first = normalizer.feed({"message": {"thinking": "hm", "content": ""}, "done": False})
        second = normalizer.feed({"message": {"content": "Hi"}, "done": False})
        last = normalizer.feed(
            {"message": {"content": ""}, "done": True, "prompt_eval_count": 7, "eval_count": 2}
        )

        assert first.thinking == "hm" and first.content is None
        assert second.content == "Hi"
        assert last is None
        assert normalizer.finish().usage == Usage(7, 2)
