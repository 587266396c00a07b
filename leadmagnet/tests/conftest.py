import pytest

from leadmagnet.scoring.question_bank import QuestionBank, load_bank


def best_answers(bank: QuestionBank) -> dict:
    return {question.id: question.best_option.label for question in bank.questions}


def worst_answers(bank: QuestionBank) -> dict:
    return {
        question.id: min(question.options, key=lambda option: option.points).label
        for question in bank.questions
    }


@pytest.fixture
def agent_bank() -> QuestionBank:
    return load_bank("agent")


@pytest.fixture
def brokerage_bank() -> QuestionBank:
    return load_bank("brokerage")


@pytest.fixture
def risk_bank() -> QuestionBank:
    return load_bank("transaction_risk")


@pytest.fixture
def best():
    return best_answers


@pytest.fixture
def worst():
    return worst_answers
