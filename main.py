from url_previewer.matrix_bot import run_bot

if __name__ == '__main__':
    run_bot()
