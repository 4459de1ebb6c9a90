"""
LLM Prompt Templates

Centralised prompt strings used by the model providers and the
analysis orchestrator.  Templates are plain ``str.format`` strings; JSON
braces inside them are doubled.
"""

# Intent analysis

INTENT_ANALYSIS_SYSTEM = """\
You are a senior data scientist triaging analysis questions.
Return ONLY valid JSON, no prose and no code fences."""

INTENT_ANALYSIS_PROMPT = """\
Analyze this data science query and provide a structured analysis.

Query: {query}

Dataset: {dataset_name}
Dataset description: {dataset_description}

Return a JSON object with exactly these keys:
  "query_type"               : descriptive | diagnostic | predictive | prescriptive
  "main_objective"           : one sentence
  "required_analysis_types"  : list of analysis techniques
  "identified_entities"      : list of columns, metrics or dimensions mentioned
  "complexity_score"         : integer 1-10 (1 = single aggregate, 10 = multi-model ML)
  "estimated_steps"          : integer
  "needs_clarification"      : true if the query is too ambiguous to answer
  "clarification_needed"     : the question to ask the user, or null
  "suggested_approach"       : one or two sentences"""


# Data requirements

REQUIREMENTS_SYSTEM = """\
You are a data engineer mapping questions onto database schemas.
Return ONLY valid JSON."""

REQUIREMENTS_PROMPT = """\
Analyze the following natural language query and determine its data requirements.

Query: {query}

Available dataset schema:
{schema_json}

Return a JSON object with these keys:
  "analysis_type"    : statistical | predictive | exploratory | descriptive
  "tables_needed"    : list of table names
  "columns_needed"   : object mapping each table to the list of columns used
  "filters_applied"  : list of filter conditions, empty if none
  "suggested_steps"  : list of short step descriptions
  "notes"            : anything the analyst should watch out for"""


# Plan generation

PLAN_SYSTEM = """\
You are a data science lead breaking an analysis into executable code steps.
Return ONLY a JSON array."""

PLAN_PROMPT = """\
Break the following analysis into an ordered list of code steps.

Query: {query}
Objective: {objective}
Complexity (1-10): {complexity}
Data requirements:
{requirements_json}

Each element of the array must be an object with:
  "type"        : one of data_exploration, data_cleaning, statistical_analysis,
                  visualization, machine_learning, feature_engineering,
                  model_evaluation, custom_computation
  "language"    : python, r or sql
  "description" : what the step computes

Later steps may read files written by earlier steps in the working directory.
Use as few steps as the question needs."""


# Code generation

CODE_GENERATION_SYSTEM = """\
You are an expert {language} programmer writing code that runs unattended
inside an isolated sandbox with no network access.
Return only code."""

CODE_GENERATION_PROMPT = """\
Generate production-ready {language} code for the following task:

{task}

Requirements:
- Include necessary imports
- Do not access the network, environment variables or the shell
- Write any files only to the current working directory
- Print the results to standard output, as JSON when practical

Return only the code without any explanation."""

STEP_TASK_TEMPLATE = """\
Step {sequence_number} ({step_type}): {description}

Original question: {query}

Datasets (datasets.json in the working directory maps each name to its file path):
{datasets}

Schema:
{schema_json}

Outputs of previous steps:
{previous_outputs}"""


# Interpretation

INTERPRETATION_SYSTEM = """\
You are a data analyst explaining results to a {user_level} audience.
Be accurate, concise and specific; quote the numbers that matter."""

INTERPRETATION_PROMPT = """\
Interpret the following analysis results for the original question.

Original question: {query}

Results:
{results_json}

Explain what the results show and answer the question directly.
Adjust the technical depth for a {user_level} reader."""

USER_LEVEL_GUIDANCE = {
    "beginner": "Avoid jargon and statistics terminology; use plain language.",
    "intermediate": "Use common statistical terms, briefly explained.",
    "advanced": "Use precise statistical terminology and mention caveats.",
    "expert": "Be terse and technical; include methodology notes and assumptions.",
}
