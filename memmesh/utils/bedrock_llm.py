"""
Amazon Bedrock LLM client wrapper used for memory enrichment and answer synthesis.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .json_utils import parse_json_object
from .logging_config import get_logger

logger = get_logger(__name__)

FENCE = '```'
JSON_FENCE = '```json'


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def user_message(text: str, prefill: Optional[str] = None) -> List[Dict[str, Any]]:
    """Build a Converse message list with an optional assistant prefill."""
    messages = [{'role': 'user', 'content': [{'text': text}]}]
    if prefill:
        messages.append({'role': 'assistant', 'content': [{'text': prefill}]})
    return messages


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=60,
                read_timeout=300,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock Converse format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=[{'text': system_prompt}],
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None
                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def generate_json(self,
                      prompt: str,
                      system_prompt: str,
                      max_tokens: Optional[int] = None) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Ask for a single JSON object.

        The assistant turn is prefilled with a ```json fence and generation
        stops at the closing fence, so the reply is the bare object.

        Returns:
            Tuple of (parsed object or None if the reply is not a JSON object, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        response, invoke_metrics = self.generate_response(messages=user_message(prompt, prefill=JSON_FENCE),
                                                          system_prompt=system_prompt,
                                                          max_tokens=max_tokens,
                                                          stop_sequences=[FENCE])
        data = parse_json_object(response)
        if data is None:
            logger.warning(f'Bedrock LLM reply is not a JSON object (length: {len(response)})')
        return data, invoke_metrics

    def generate_text(self,
                      prompt: str,
                      system_prompt: str,
                      max_tokens: Optional[int] = None,
                      temperature: Optional[float] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Single-turn plain text reply, stripped. Raises BedrockLLMError like ``generate_response``."""
        response, invoke_metrics = self.generate_response(messages=user_message(prompt),
                                                          system_prompt=system_prompt,
                                                          max_tokens=max_tokens,
                                                          temperature=temperature)
        return response.strip(), invoke_metrics

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response, _ = self.generate_text('Hi',
                                             "Respond with just 'OK'.",
                                             max_tokens=10,
                                             temperature=0.0)
            return len(response) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
